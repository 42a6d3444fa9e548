"""
EngineConfig - unified configuration for the workflow engine.

Wires together:
- History storage (execution persistence)
- Task queue backend (activity dispatch)
- Default activity options (retry policy, start-to-close timeout)
- Worker defaults (poll interval, concurrency)
- Observability (logging, metrics, tracing listeners)

Example:
    >>> from durasaga.core.config import EngineConfig, configure
    >>> from durasaga.storage import SQLiteHistoryStorage
    >>>
    >>> config = EngineConfig(
    ...     storage=SQLiteHistoryStorage("./durasaga.db"),
    ...     queue_url="redis://localhost:6379/0",
    ...     metrics=True,
    ... )
    >>> configure(config)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from durasaga.core.env import get_env
from durasaga.core.listeners import (
    EngineListener,
    LoggingEngineListener,
    MetricsEngineListener,
    TracingEngineListener,
)
from durasaga.core.retry import RetryPolicy
from durasaga.dispatch.registry import TaskQueueRegistry
from durasaga.storage.base import HistoryStorage
from durasaga.storage.factory import create_storage

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """
    Configuration for engine, dispatcher and workers.

    Attributes:
        storage: History storage backend (defaults to in-memory)
        queue_url: Task queue backend, ``memory://`` or ``redis://...``
        retry_policy: Default retry policy for activities
        start_to_close_timeout: Default per-attempt timeout in seconds
        poll_interval: Worker poll interval in seconds when a queue is empty
        max_concurrent: Activities a worker runs at once
        metrics: True/False or a listener instance
        tracing: True/False or a listener instance
        logging: True/False or a listener instance
    """

    storage: HistoryStorage | None = None
    queue_url: str = "memory://"
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    start_to_close_timeout: float = 60.0
    poll_interval: float = 0.1
    max_concurrent: int = 10

    metrics: bool | EngineListener = True
    tracing: bool | EngineListener = False
    logging: bool | EngineListener = True

    _listeners: list[EngineListener] = field(default_factory=list, repr=False)
    _queues: TaskQueueRegistry | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.storage is None:
            self.storage = create_storage("memory://")
            logger.debug("Using default InMemoryHistoryStorage")
        if self.start_to_close_timeout <= 0:
            msg = f"start_to_close_timeout must be > 0, got {self.start_to_close_timeout}"
            raise ValueError(msg)
        self._listeners = self._build_listeners()

    def _build_listeners(self) -> list[EngineListener]:
        listeners: list[EngineListener] = []
        for setting, default in (
            (self.logging, LoggingEngineListener),
            (self.metrics, MetricsEngineListener),
            (self.tracing, TracingEngineListener),
        ):
            if isinstance(setting, EngineListener):
                listeners.append(setting)
            elif setting:
                listeners.append(default())
        return listeners

    @property
    def listeners(self) -> list[EngineListener]:
        return self._listeners

    @property
    def queues(self) -> TaskQueueRegistry:
        """Task queue registry for ``queue_url`` (created on first access)."""
        if self._queues is None:
            self._queues = TaskQueueRegistry(self.queue_url)
        return self._queues

    def to_dict(self) -> dict[str, Any]:
        return {
            "storage": type(self.storage).__name__,
            "queue_url": self.queue_url,
            "retry_policy": self.retry_policy.to_dict(),
            "start_to_close_timeout": self.start_to_close_timeout,
            "poll_interval": self.poll_interval,
            "max_concurrent": self.max_concurrent,
            "listeners": [type(listener).__name__ for listener in self._listeners],
        }

    @classmethod
    def from_env(cls, load_dotenv: bool = True) -> EngineConfig:
        """
        Create configuration from environment variables.

        Environment variables:
            DURASAGA_STORAGE_URL: memory:// or sqlite:///path/to/file.db
            DURASAGA_QUEUE_URL: memory:// or redis://host:port/db
            DURASAGA_MAX_ATTEMPTS, DURASAGA_INITIAL_INTERVAL,
            DURASAGA_BACKOFF_COEFFICIENT, DURASAGA_MAX_INTERVAL: retry policy
            DURASAGA_START_TO_CLOSE_TIMEOUT: per-attempt timeout in seconds
            DURASAGA_POLL_INTERVAL, DURASAGA_MAX_CONCURRENT: worker defaults
            DURASAGA_METRICS, DURASAGA_LOGGING, DURASAGA_TRACING: true/false

        Example:
            >>> os.environ["DURASAGA_STORAGE_URL"] = "sqlite:///./durasaga.db"
            >>> config = EngineConfig.from_env()
        """
        env = get_env()
        if load_dotenv:
            env.load()

        retry_policy = RetryPolicy(
            max_attempts=env.get_int("DURASAGA_MAX_ATTEMPTS", 3),
            initial_interval=env.get_float("DURASAGA_INITIAL_INTERVAL", 2.0),
            backoff_coefficient=env.get_float("DURASAGA_BACKOFF_COEFFICIENT", 2.0),
            max_interval=env.get_float("DURASAGA_MAX_INTERVAL"),
        )

        return cls(
            storage=create_storage(env.get("DURASAGA_STORAGE_URL", "memory://")),
            queue_url=env.get("DURASAGA_QUEUE_URL", "memory://"),
            retry_policy=retry_policy,
            start_to_close_timeout=env.get_float("DURASAGA_START_TO_CLOSE_TIMEOUT", 60.0),
            poll_interval=env.get_float("DURASAGA_POLL_INTERVAL", 0.1),
            max_concurrent=env.get_int("DURASAGA_MAX_CONCURRENT", 10),
            metrics=env.get_bool("DURASAGA_METRICS", True),
            logging=env.get_bool("DURASAGA_LOGGING", True),
            tracing=env.get_bool("DURASAGA_TRACING", False),
        )

    @classmethod
    def from_file(cls, file_path: str | Path, substitute_env: bool = True) -> EngineConfig:
        """
        Load configuration from a YAML file.

        Supports environment variable substitution using ${VAR} syntax.

        Example:
            # durasaga.yaml
            # storage:
            #   url: ${DURASAGA_STORAGE_URL:-sqlite:///./durasaga.db}
            # queues:
            #   url: redis://${REDIS_HOST:-localhost}:6379/0
            # activity:
            #   start_to_close_timeout: 60
            #   retry:
            #     max_attempts: 3
            #     initial_interval: 2
            #     backoff_coefficient: 2.0
            # worker:
            #   poll_interval: 0.1
            #   max_concurrent: 10
            # observability:
            #   metrics: true
            #   tracing: false
            #   logging: true
        """
        path = Path(file_path)
        if not path.exists():
            msg = f"Configuration file not found: {file_path}"
            raise FileNotFoundError(msg)

        with path.open() as f:
            data = yaml.safe_load(f)

        if not data:
            return cls()

        if substitute_env:
            env = get_env()
            env.load()
            data = env.substitute_dict(data)

        storage_data = data.get("storage") or {}
        queue_data = data.get("queues") or {}
        activity_data = data.get("activity") or {}
        worker_data = data.get("worker") or {}
        obs_data = data.get("observability") or {}

        return cls(
            storage=create_storage(storage_data.get("url", "memory://")),
            queue_url=queue_data.get("url", "memory://"),
            retry_policy=RetryPolicy.from_dict(activity_data.get("retry") or {}),
            start_to_close_timeout=float(activity_data.get("start_to_close_timeout", 60.0)),
            poll_interval=float(worker_data.get("poll_interval", 0.1)),
            max_concurrent=int(worker_data.get("max_concurrent", 10)),
            metrics=_as_bool(obs_data.get("metrics", True)),
            tracing=_as_bool(obs_data.get("tracing", False)),
            logging=_as_bool(obs_data.get("logging", True)),
        )


def _as_bool(value: Any) -> bool:
    # Substituted values arrive as strings
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


# Global configuration
_global_config: EngineConfig | None = None


def configure(config: EngineConfig) -> None:
    """Set the global engine configuration."""
    global _global_config
    _global_config = config
    logger.info(f"Engine configured: {config.to_dict()}")


def get_config() -> EngineConfig:
    """Get the global configuration, creating a default one on first use."""
    global _global_config
    if _global_config is None:
        _global_config = EngineConfig()
    return _global_config
