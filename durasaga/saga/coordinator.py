"""
Saga Coordinator - the step/compensation state machine.

    IDLE -> RUNNING(0) -> ... -> RUNNING(n-1) -> COMPLETED
    RUNNING(i) --terminal failure--> COMPENSATING(k) for k in reversed(completed_steps) -> FAILED

The coordinator branches on tagged step results (Success, RetryableFailure,
FatalFailure), never on exceptions. Compensation is best-effort: a failed
compensation is recorded and the remaining ones still run.

Its run state is never stored: ``derive_run_state`` rebuilds it from the
execution history.

Usage:
    >>> saga = SagaDefinition(
    ...     "OrderWorkflow",
    ...     [
    ...         SagaStep("debitPayment", "debitPayment", PAYMENT_QUEUE, compensation="refundPayment"),
    ...         SagaStep("shipOrder", "shipOrder", SHIPPING_QUEUE),
    ...     ],
    ... )
    >>> engine.register(saga)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from durasaga.core.exceptions import CompensationError, SagaStateError, WorkflowCancelledError
from durasaga.core.logger import get_logger
from durasaga.core.results import FatalFailure, RetryableFailure, StepResult, Success
from durasaga.core.retry import RetryPolicy
from durasaga.core.types import Event, EventType, ExecutionStatus, WorkflowOutcome

logger = get_logger(__name__)


class ActivityInvoker(Protocol):
    """The only capability the coordinator needs from the engine."""

    execution_id: str

    @property
    def cancel_requested(self) -> bool: ...

    @property
    def is_replaying(self) -> bool: ...

    async def execute_activity(
        self,
        activity_type: str,
        input: Any,
        task_queue: str,
        retry_policy: RetryPolicy | None = None,
        start_to_close_timeout: float | None = None,
        compensation: bool = False,
        step_index: int | None = None,
    ) -> StepResult: ...


class SagaPhase(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPENSATING = "compensating"
    COMPLETED = "completed"
    FAILED = "failed"


class CompensationStatus(Enum):
    COMPENSATED = "compensated"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SagaStep:
    """
    One forward activity with an optional compensating activity.

    ``input_builder(workflow_input, outputs)`` builds the forward input from
    the workflow input and the outputs of earlier steps (by step name);
    by default the workflow input is passed through.
    ``compensation_input_builder(workflow_input, forward_output)`` builds the
    compensation input; by default the forward output is passed.
    """

    name: str
    activity: str
    task_queue: str
    compensation: str | None = None
    compensation_queue: str | None = None
    retry_policy: RetryPolicy | None = None
    compensation_retry_policy: RetryPolicy | None = None
    start_to_close_timeout: float | None = None
    input_builder: Callable[[Any, dict[str, Any]], Any] | None = None
    compensation_input_builder: Callable[[Any, Any], Any] | None = None

    @property
    def compensable(self) -> bool:
        return self.compensation is not None

    def forward_input(self, workflow_input: Any, outputs: dict[str, Any]) -> Any:
        if self.input_builder is None:
            return workflow_input
        return self.input_builder(workflow_input, outputs)

    def compensation_input(self, workflow_input: Any, forward_output: Any) -> Any:
        if self.compensation_input_builder is None:
            return forward_output
        return self.compensation_input_builder(workflow_input, forward_output)


@dataclass
class SagaRunState:
    """
    Progress of one saga run.

    ``completed_steps`` only grows, and only in increasing step order.
    """

    current_step_index: int | None = None
    completed_steps: list[int] = field(default_factory=list)
    phase: SagaPhase = SagaPhase.IDLE
    compensated_steps: list[int] = field(default_factory=list)

    def start_step(self, index: int) -> None:
        if self.phase not in (SagaPhase.IDLE, SagaPhase.RUNNING):
            msg = f"Cannot start step {index} while {self.phase.value}"
            raise SagaStateError(msg)
        self.phase = SagaPhase.RUNNING
        self.current_step_index = index

    def record_completed(self, index: int) -> None:
        if self.phase != SagaPhase.RUNNING:
            msg = f"Step {index} completed while {self.phase.value}"
            raise SagaStateError(msg)
        if self.completed_steps and index <= self.completed_steps[-1]:
            msg = f"Step {index} completed out of order after {self.completed_steps}"
            raise SagaStateError(msg)
        self.completed_steps.append(index)

    def start_compensation(self, index: int) -> None:
        if index not in self.completed_steps:
            msg = f"Step {index} was never completed and cannot be compensated"
            raise SagaStateError(msg)
        self.phase = SagaPhase.COMPENSATING
        self.current_step_index = index

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_step_index": self.current_step_index,
            "completed_steps": list(self.completed_steps),
            "compensated_steps": list(self.compensated_steps),
            "phase": self.phase.value,
        }


@dataclass
class SagaResult:
    """Aggregate, user-facing result of a saga execution."""

    status: ExecutionStatus
    completed_steps: list[int] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    failed_step: str | None = None
    cause: str | None = None
    compensations: list[dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    @property
    def compensation_failures(self) -> list[dict[str, Any]]:
        return [c for c in self.compensations if c["status"] == CompensationStatus.FAILED.value]

    @classmethod
    def from_outcome(cls, outcome: WorkflowOutcome) -> SagaResult:
        output = outcome.output or {}
        failure = outcome.failure or {}
        return cls(
            status=ExecutionStatus.COMPLETED if outcome.succeeded else ExecutionStatus.FAILED,
            completed_steps=list(output.get("completed_steps", [])),
            outputs=dict(output.get("outputs", {})),
            failed_step=failure.get("step"),
            cause=(failure.get("cause") or {}).get("message"),
            compensations=list(outcome.compensations),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "completed_steps": self.completed_steps,
            "outputs": self.outputs,
            "failed_step": self.failed_step,
            "cause": self.cause,
            "compensations": self.compensations,
        }


class SagaDefinition:
    """A named, linear sequence of saga steps. Register it with the engine."""

    def __init__(self, name: str, steps: list[SagaStep]):
        if not steps:
            msg = f"Saga '{name}' needs at least one step"
            raise ValueError(msg)
        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            msg = f"Saga '{name}' has duplicate step names: {names}"
            raise ValueError(msg)
        self.name = name
        self.steps = list(steps)

    async def run(self, ctx: ActivityInvoker, input: Any) -> WorkflowOutcome:
        return await SagaCoordinator(self, ctx).run(input)

    def run_state(self, history: list[Event]) -> SagaRunState:
        return derive_run_state(history)

    def __repr__(self) -> str:
        return f"SagaDefinition({self.name!r}, steps={[s.name for s in self.steps]})"


class SagaCoordinator:
    """Drives one saga run through an ActivityInvoker."""

    def __init__(self, definition: SagaDefinition, invoker: ActivityInvoker):
        self.definition = definition
        self.invoker = invoker
        self.state = SagaRunState()
        self.outputs: dict[str, Any] = {}

    def _log(self, level: str, message: str) -> None:
        # Replayed decisions were already logged by the original run
        if not self.invoker.is_replaying:
            getattr(logger, level)(f"[{self.invoker.execution_id}] {message}")

    async def run(self, input: Any) -> WorkflowOutcome:
        failure = await self._run_forward(input)

        if failure is None:
            self.state.phase = SagaPhase.COMPLETED
            self._log("info", f"Saga {self.definition.name} completed")
            return WorkflowOutcome(succeeded=True, output=self._output())

        compensations = await self._compensate(input)
        self.state.phase = SagaPhase.FAILED
        self._log("error", f"Saga {self.definition.name} failed: {failure['cause']['message']}")
        return WorkflowOutcome(
            succeeded=False,
            output=self._output(),
            failure=failure,
            compensations=compensations,
        )

    def _output(self) -> dict[str, Any]:
        return {"completed_steps": list(self.state.completed_steps), "outputs": dict(self.outputs)}

    async def _run_forward(self, input: Any) -> dict[str, Any] | None:
        """Run forward steps in order. Returns the failure, or None on success."""
        for index, step in enumerate(self.definition.steps):
            self.state.start_step(index)
            self._log("info", f"Step {index} ({step.name}) scheduling {step.activity}")
            result = await self.invoker.execute_activity(
                step.activity,
                step.forward_input(input, self.outputs),
                step.task_queue,
                retry_policy=step.retry_policy,
                start_to_close_timeout=step.start_to_close_timeout,
                step_index=index,
            )

            if not isinstance(result, Success):
                return self._failure(index, step, result)
            self.state.record_completed(index)
            self.outputs[step.name] = result.output

            # A cancel recorded while this step was in flight, including the last one
            if self.invoker.cancel_requested:
                self._log("warning", f"Cancellation observed after step {step.name}")
                return self._cancelled(index, step)
        return None

    def _cancelled(self, index: int, step: SagaStep) -> dict[str, Any]:
        error = WorkflowCancelledError(self.invoker.execution_id)
        return {
            "step": step.name,
            "step_index": index,
            "activity_type": step.activity,
            "attempts": 0,
            "exhausted": False,
            "cause": {"type": type(error).__name__, "message": str(error), "retryable": False},
        }

    def _failure(self, index: int, step: SagaStep, result: RetryableFailure | FatalFailure) -> dict[str, Any]:
        error = dict(result.error)
        cause = {
            "type": error.get("type", "ActivityError"),
            "message": f"{step.activity} failed: {error.get('message', '')}",
            "retryable": error.get("retryable", False),
        }
        return {
            "step": step.name,
            "step_index": index,
            "activity_type": step.activity,
            "attempts": result.attempts,
            "exhausted": isinstance(result, RetryableFailure),
            "cause": cause,
            "error": error,
        }

    async def _compensate(self, input: Any) -> list[dict[str, Any]]:
        """Compensate completed steps in strictly decreasing index order."""
        outcomes = []
        for index in reversed(self.state.completed_steps):
            step = self.definition.steps[index]
            if not step.compensable:
                outcomes.append({
                    "step": step.name,
                    "step_index": index,
                    "activity_type": None,
                    "status": CompensationStatus.SKIPPED.value,
                })
                continue

            self.state.start_compensation(index)
            self._log("warning", f"Compensating step {index} ({step.name}) with {step.compensation}")
            result = await self.invoker.execute_activity(
                step.compensation,
                step.compensation_input(input, self.outputs.get(step.name)),
                step.compensation_queue or step.task_queue,
                retry_policy=step.compensation_retry_policy or step.retry_policy,
                start_to_close_timeout=step.start_to_close_timeout,
                compensation=True,
                step_index=index,
            )

            if isinstance(result, Success):
                self.state.compensated_steps.append(index)
                outcomes.append({
                    "step": step.name,
                    "step_index": index,
                    "activity_type": step.compensation,
                    "status": CompensationStatus.COMPENSATED.value,
                    "result": result.output,
                })
            else:
                error = CompensationError(step.name, result.error)
                self._log("critical", str(error))
                outcomes.append({
                    "step": step.name,
                    "step_index": index,
                    "activity_type": step.compensation,
                    "status": CompensationStatus.FAILED.value,
                    "error": result.error,
                })
        return outcomes


def derive_run_state(history: list[Event]) -> SagaRunState:
    """Rebuild a SagaRunState from an execution history."""
    state = SagaRunState()
    step_by_seq: dict[int, int] = {}

    for event in history:
        if event.event_type == EventType.WORKFLOW_COMPLETED:
            state.phase = SagaPhase.COMPLETED
            continue
        if event.event_type == EventType.WORKFLOW_FAILED:
            state.phase = SagaPhase.FAILED
            continue

        step_index = event.attributes.get("step_index")
        if event.event_type in (EventType.ACTIVITY_SCHEDULED, EventType.COMPENSATION_SCHEDULED):
            if step_index is None:
                continue
            step_by_seq[event.seq] = step_index
            state.current_step_index = step_index
            state.phase = (
                SagaPhase.RUNNING
                if event.event_type == EventType.ACTIVITY_SCHEDULED
                else SagaPhase.COMPENSATING
            )
        elif event.seq in step_by_seq:
            if event.event_type == EventType.ACTIVITY_COMPLETED:
                state.completed_steps.append(step_by_seq[event.seq])
            elif event.event_type == EventType.COMPENSATION_COMPLETED:
                state.compensated_steps.append(step_by_seq[event.seq])
    return state
