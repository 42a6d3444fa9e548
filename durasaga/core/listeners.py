"""
Engine listeners - observers of execution lifecycle events.

The engine calls each hook that a listener defines (sync or async). A
listener that raises is logged and skipped; it never affects execution.

Usage:
    >>> engine = WorkflowEngine(
    ...     storage,
    ...     listeners=[LoggingEngineListener(), MetricsEngineListener()],
    ... )
"""

from __future__ import annotations

from typing import Any

from durasaga.core.types import ActivityTask, ExecutionStatus, WorkflowOutcome
from durasaga.monitoring.logging import EngineLogger
from durasaga.monitoring.metrics import EngineMetrics
from durasaga.monitoring.prometheus import PrometheusMetrics
from durasaga.monitoring.tracing import EngineTracer


class EngineListener:
    """Base class with a no-op for every hook."""

    async def on_execution_started(self, execution_id: str, workflow: str, input: Any) -> None:
        pass

    async def on_activity_scheduled(
        self, execution_id: str, task: ActivityTask, compensation: bool
    ) -> None:
        pass

    async def on_activity_attempt_failed(
        self, execution_id: str, task: ActivityTask, error: dict[str, Any], delay: float
    ) -> None:
        pass

    async def on_activity_completed(
        self, execution_id: str, task: ActivityTask, result: Any, compensation: bool
    ) -> None:
        pass

    async def on_activity_failed(
        self, execution_id: str, task: ActivityTask, error: dict[str, Any], compensation: bool
    ) -> None:
        pass

    async def on_cancel_requested(self, execution_id: str, reason: str | None) -> None:
        pass

    async def on_execution_completed(
        self, execution_id: str, workflow: str, outcome: WorkflowOutcome, duration: float
    ) -> None:
        pass

    async def on_execution_failed(
        self, execution_id: str, workflow: str, outcome: WorkflowOutcome, duration: float
    ) -> None:
        pass


class LoggingEngineListener(EngineListener):
    """Structured lifecycle logging through EngineLogger."""

    def __init__(self, engine_logger: EngineLogger | None = None):
        self.log = engine_logger or EngineLogger("durasaga.engine")

    async def on_execution_started(self, execution_id, workflow, input):
        self.log.execution_started(execution_id, workflow)

    async def on_activity_scheduled(self, execution_id, task, compensation):
        self.log.activity_scheduled(execution_id, task.activity_type, task.task_id, compensation)

    async def on_activity_attempt_failed(self, execution_id, task, error, delay):
        self.log.attempt_failed(execution_id, task.activity_type, task.attempt, error, delay)

    async def on_activity_completed(self, execution_id, task, result, compensation):
        self.log.activity_completed(execution_id, task.activity_type, task.attempt, compensation)

    async def on_activity_failed(self, execution_id, task, error, compensation):
        if compensation:
            self.log.compensation_failed(execution_id, task.activity_type, task.attempt, error)
        else:
            self.log.activity_failed(execution_id, task.activity_type, task.attempt, error)

    async def on_cancel_requested(self, execution_id, reason):
        self.log.cancel_requested(execution_id, reason)

    async def on_execution_completed(self, execution_id, workflow, outcome, duration):
        self.log.execution_finished(
            execution_id, workflow, ExecutionStatus.COMPLETED, duration * 1000
        )
        self.log.clear_execution_context()

    async def on_execution_failed(self, execution_id, workflow, outcome, duration):
        self.log.execution_finished(
            execution_id, workflow, ExecutionStatus.FAILED, duration * 1000, outcome.failure
        )
        self.log.clear_execution_context()


class MetricsEngineListener(EngineListener):
    """Feeds EngineMetrics and, when given, PrometheusMetrics."""

    def __init__(
        self, metrics: EngineMetrics | None = None, prometheus: PrometheusMetrics | None = None
    ):
        self.metrics = metrics or EngineMetrics()
        self.prometheus = prometheus

    async def on_execution_started(self, execution_id, workflow, input):
        if self.prometheus:
            self.prometheus.execution_started(workflow)

    async def on_activity_attempt_failed(self, execution_id, task, error, delay):
        self.metrics.record_attempt(retried=True)
        if self.prometheus:
            self.prometheus.record_attempt(task.activity_type, "retried")

    async def on_activity_completed(self, execution_id, task, result, compensation):
        self.metrics.record_attempt()
        if compensation:
            self.metrics.record_compensation()
        if self.prometheus:
            self.prometheus.record_attempt(task.activity_type, "completed")
            if compensation:
                self.prometheus.record_compensation(task.activity_type, "completed")

    async def on_activity_failed(self, execution_id, task, error, compensation):
        self.metrics.record_attempt()
        self.metrics.record_activity_failure()
        if compensation:
            self.metrics.record_compensation(failed=True)
        if self.prometheus:
            self.prometheus.record_attempt(task.activity_type, "failed")
            if compensation:
                self.prometheus.record_compensation(task.activity_type, "failed")

    async def on_execution_completed(self, execution_id, workflow, outcome, duration):
        self._record(workflow, ExecutionStatus.COMPLETED, duration)

    async def on_execution_failed(self, execution_id, workflow, outcome, duration):
        self._record(workflow, ExecutionStatus.FAILED, duration)

    def _record(self, workflow: str, status: ExecutionStatus, duration: float) -> None:
        self.metrics.record_execution(workflow, status, duration)
        if self.prometheus:
            self.prometheus.record_execution(workflow, status, duration)


class TracingEngineListener(EngineListener):
    """OpenTelemetry spans for executions and activity attempts."""

    def __init__(self, tracer: EngineTracer | None = None):
        self.tracer = tracer or EngineTracer()

    async def on_execution_started(self, execution_id, workflow, input):
        self.tracer.start_execution(execution_id, workflow)

    async def on_activity_scheduled(self, execution_id, task, compensation):
        self.tracer.start_attempt(task, compensation)

    async def on_activity_attempt_failed(self, execution_id, task, error, delay):
        self.tracer.end_attempt(task, succeeded=False, error=error.get("message"))
        self.tracer.start_attempt(task.next_attempt())

    async def on_activity_completed(self, execution_id, task, result, compensation):
        self.tracer.end_attempt(task, succeeded=True)

    async def on_activity_failed(self, execution_id, task, error, compensation):
        self.tracer.end_attempt(task, succeeded=False, error=error.get("message"))

    async def on_execution_completed(self, execution_id, workflow, outcome, duration):
        self.tracer.end_execution(execution_id, succeeded=True, status="completed")

    async def on_execution_failed(self, execution_id, workflow, outcome, duration):
        cause = (outcome.failure or {}).get("cause") or {}
        self.tracer.end_execution(
            execution_id, succeeded=False, status="failed", error=cause.get("message")
        )
