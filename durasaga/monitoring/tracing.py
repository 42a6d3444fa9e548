"""
Distributed tracing for workflow executions

One span per execution and one child span per activity attempt, emitted
through the OpenTelemetry API. Without a configured tracer provider the API
hands out non-recording spans, so tracing costs next to nothing when unused.

Quick Start:
    >>> from durasaga.monitoring.tracing import setup_tracing
    >>> tracer = setup_tracing("order-service")
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Span, SpanKind, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from durasaga.core.types import ActivityTask


class EngineTracer:
    """
    Span bookkeeping for executions and activity attempts.

    Spans are started and ended from different engine callbacks, so they are
    tracked by execution id and task id instead of context managers.

    Example:
        >>> tracer = EngineTracer("order-service")
        >>> tracer.start_execution("order-1-1700000000000", "OrderSaga")
        >>> tracer.end_execution("order-1-1700000000000", succeeded=True)
    """

    def __init__(self, service_name: str = "durasaga", tracer_provider: Any = None):
        self.service_name = service_name
        self.tracer = trace.get_tracer(__name__, tracer_provider=tracer_provider)
        self._executions: dict[str, Span] = {}
        self._attempts: dict[tuple[str, int], Span] = {}

    @property
    def open_spans(self) -> int:
        return len(self._executions) + len(self._attempts)

    def start_execution(self, execution_id: str, workflow: str) -> Span:
        span = self.tracer.start_span(
            name=f"workflow.execute.{workflow}",
            kind=SpanKind.INTERNAL,
            attributes={
                "workflow.execution_id": execution_id,
                "workflow.name": workflow,
                "workflow.service": self.service_name,
            },
        )
        self._executions[execution_id] = span
        return span

    def end_execution(
        self,
        execution_id: str,
        succeeded: bool,
        status: str | None = None,
        error: str | None = None,
    ) -> None:
        span = self._executions.pop(execution_id, None)
        if span is None:
            return
        if status:
            span.set_attribute("workflow.status", status)
        if succeeded:
            span.set_status(Status(StatusCode.OK))
        else:
            span.set_status(Status(StatusCode.ERROR, error or "workflow failed"))
        span.end()

    def start_attempt(self, task: ActivityTask, compensation: bool = False) -> Span:
        parent = self._executions.get(task.execution_id)
        context = trace.set_span_in_context(parent) if parent is not None else None
        kind = "compensation" if compensation else "activity"
        span = self.tracer.start_span(
            name=f"workflow.{kind}.{task.activity_type}",
            context=context,
            kind=SpanKind.CLIENT,
            attributes={
                "workflow.execution_id": task.execution_id,
                "activity.type": task.activity_type,
                "activity.task_id": task.task_id,
                "activity.attempt": task.attempt,
                "activity.task_queue": task.task_queue,
            },
        )
        self._attempts[(task.task_id, task.attempt)] = span
        return span

    def end_attempt(self, task: ActivityTask, succeeded: bool, error: str | None = None) -> None:
        span = self._attempts.pop((task.task_id, task.attempt), None)
        if span is None:
            return
        if succeeded:
            span.set_status(Status(StatusCode.OK))
        else:
            span.set_status(Status(StatusCode.ERROR, error or "attempt failed"))
        span.end()

    def get_trace_context(self, execution_id: str) -> dict[str, str]:
        """Trace headers of an execution span, for propagation to activity workers."""
        span = self._executions.get(execution_id)
        if span is None:
            return {}
        carrier: dict[str, str] = {}
        TraceContextTextMapPropagator().inject(carrier, context=trace.set_span_in_context(span))
        return carrier


def setup_tracing(service_name: str = "durasaga", tracer_provider: Any = None) -> EngineTracer:
    """
    Create an EngineTracer.

    Exporters are configured by the application through the OpenTelemetry
    SDK; pass ``tracer_provider`` to bypass the global provider.
    """
    return EngineTracer(service_name, tracer_provider=tracer_provider)
