# ============================================
# FILE: durasaga/monitoring/prometheus.py
# ============================================

"""
Prometheus metrics integration for durasaga.

Quick Start:
    >>> from durasaga.monitoring.prometheus import PrometheusMetrics, start_metrics_server
    >>>
    >>> start_metrics_server(port=8000)
    >>> metrics = PrometheusMetrics()
    >>>
    >>> # Feed it from the engine
    >>> from durasaga.core.listeners import MetricsEngineListener
    >>> engine = WorkflowEngine(storage, listeners=[MetricsEngineListener(prometheus=metrics)])
"""

import logging

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from durasaga.core.types import ExecutionStatus

logger = logging.getLogger(__name__)


class PrometheusMetrics:
    """
    Prometheus-compatible metrics collector.

    Exposes the following metrics:
        - <prefix>_execution_total: executions by workflow and terminal status
        - <prefix>_execution_duration_seconds: execution durations
        - <prefix>_active_executions: currently running executions
        - <prefix>_activity_attempts_total: attempts by activity and outcome
        - <prefix>_compensations_total: compensations by activity and outcome
    """

    def __init__(self, prefix: str = "durasaga", registry: CollectorRegistry | None = None):
        """
        Args:
            prefix: Metric name prefix
            registry: Collector registry (defaults to the global one)
        """
        self._prefix = prefix
        registry = registry or REGISTRY

        self._execution_total = Counter(
            f"{prefix}_execution_total",
            "Total workflow executions",
            ["workflow", "status"],
            registry=registry,
        )

        self._execution_duration = Histogram(
            f"{prefix}_execution_duration_seconds",
            "Workflow execution duration in seconds",
            ["workflow"],
            buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            registry=registry,
        )

        self._active = Gauge(
            f"{prefix}_active_executions",
            "Number of currently running executions",
            ["workflow"],
            registry=registry,
        )

        self._attempts = Counter(
            f"{prefix}_activity_attempts_total",
            "Activity attempts by outcome",
            ["activity_type", "outcome"],
            registry=registry,
        )

        self._compensations = Counter(
            f"{prefix}_compensations_total",
            "Compensating activities by outcome",
            ["activity_type", "outcome"],
            registry=registry,
        )

    def execution_started(self, workflow: str) -> None:
        self._active.labels(workflow=workflow).inc()

    def record_execution(self, workflow: str, status: ExecutionStatus, duration: float) -> None:
        self._execution_total.labels(workflow=workflow, status=status.value).inc()
        self._execution_duration.labels(workflow=workflow).observe(duration)
        self._active.labels(workflow=workflow).dec()

    def record_attempt(self, activity_type: str, outcome: str) -> None:
        """``outcome`` is one of completed, retried, failed."""
        self._attempts.labels(activity_type=activity_type, outcome=outcome).inc()

    def record_compensation(self, activity_type: str, outcome: str) -> None:
        """``outcome`` is completed or failed."""
        self._compensations.labels(activity_type=activity_type, outcome=outcome).inc()


def start_metrics_server(port: int = 8000, addr: str = "0.0.0.0") -> None:
    """
    Start a Prometheus HTTP metrics server.

    Example:
        >>> start_metrics_server(port=8000)
        >>> # Metrics available at http://localhost:8000/metrics
    """
    start_http_server(port, addr)
    logger.info(f"Prometheus metrics server started on port {port}")
