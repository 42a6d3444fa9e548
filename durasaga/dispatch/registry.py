"""
Task queue registry.

Resolves queue names to queue instances of one backend. The scheduling side
and the polling workers share a registry so that a queue name means the same
channel on both sides; a Redis backend also keeps that channel across a
restart of the engine process.
"""

import logging
from urllib.parse import urlparse

from durasaga.dispatch.base import TaskQueue
from durasaga.dispatch.memory import InMemoryTaskQueue
from durasaga.dispatch.redis import RedisTaskQueue

logger = logging.getLogger(__name__)


class TaskQueueRegistry:
    """
    Lazily creates one queue per name.

    Example:
        >>> registry = TaskQueueRegistry("memory://")
        >>> queue = await registry.get("PAYMENT_ACTIVITY_TASK_QUEUE")
    """

    def __init__(self, url: str = "memory://", key_prefix: str = "durasaga:queue:"):
        self.url = url
        self.key_prefix = key_prefix
        self.backend = urlparse(url).scheme.lower() or url.lower()
        if self.backend not in ("memory", "redis", "rediss"):
            msg = f"Unknown task queue backend: '{self.backend}'. Available backends: memory, redis"
            raise ValueError(msg)
        self._queues: dict[str, TaskQueue] = {}

    def _create(self, name: str) -> TaskQueue:
        if self.backend == "memory":
            return InMemoryTaskQueue(name)
        return RedisTaskQueue(name, url=self.url, key_prefix=self.key_prefix)

    async def get(self, name: str) -> TaskQueue:
        """Return the queue for ``name``, connecting it on first use."""
        queue = self._queues.get(name)
        if queue is None:
            queue = self._create(name)
            await queue.connect()
            existing = self._queues.setdefault(name, queue)
            if existing is not queue:
                await queue.close()
                return existing
            logger.debug(f"Registered task queue {queue!r}")
        return queue

    @property
    def names(self) -> list[str]:
        return sorted(self._queues)

    async def close(self) -> None:
        for queue in self._queues.values():
            await queue.close()
        self._queues.clear()
