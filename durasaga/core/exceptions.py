# ============================================
# FILE: durasaga/core/exceptions.py
# ============================================

"""
All engine-related exceptions

Activity errors are resolved locally by the retry policy evaluator; only
exhausted or non-retryable failures escalate to the saga coordinator.
"""

from __future__ import annotations

from typing import Any


class DurasagaError(Exception):
    """Base engine error"""


# ============================================
# Activity errors
# ============================================


class ActivityError(DurasagaError):
    """
    Error raised by an activity implementation.

    ``retryable`` tells the retry policy evaluator whether another attempt
    may succeed.
    """

    retryable: bool = True

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
        }


class TransientActivityError(ActivityError):
    """Transient fault (provider unavailable, network blip). Retried per policy."""

    retryable = True


class NonRetryableActivityError(ActivityError):
    """Permanent fault (invalid input). Fails the step on the first attempt."""

    retryable = False


class ActivityTimeoutError(ActivityError):
    """No completion report within the start-to-close timeout"""

    retryable = True

    def __init__(self, task_id: str, attempt: int, timeout: float):
        self.task_id = task_id
        self.attempt = attempt
        self.timeout = timeout
        super().__init__(
            f"Activity task {task_id} attempt {attempt} timed out after {timeout}s",
            details={"task_id": task_id, "attempt": attempt, "timeout": timeout},
        )


class CompensationError(DurasagaError):
    """A compensating activity failed after exhausting its retry policy"""

    def __init__(self, step_name: str, cause: dict[str, Any] | None = None):
        self.step_name = step_name
        self.cause = cause or {}
        message = f"Compensation for step '{step_name}' failed"
        if self.cause.get("message"):
            message = f"{message}: {self.cause['message']}"
        super().__init__(message)


# ============================================
# Engine errors
# ============================================


class AlreadyRunningError(DurasagaError):
    """Duplicate start for an execution id that is still active"""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Workflow execution '{execution_id}' is already running")


class ExecutionIdReuseError(DurasagaError):
    """Start requested for an execution id whose history is already terminal"""

    def __init__(self, execution_id: str, status: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__(
            f"Workflow execution '{execution_id}' already finished with status '{status}'"
        )


class ExecutionNotFoundError(DurasagaError):
    """No execution with the given id"""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Workflow execution '{execution_id}' not found")


class UnknownWorkflowError(DurasagaError):
    """No workflow definition registered under the requested name"""


class NonDeterminismError(DurasagaError):
    """Replay diverged from the recorded history"""

    def __init__(self, execution_id: str, seq: int, expected: str, actual: str):
        self.execution_id = execution_id
        self.seq = seq
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Non-deterministic workflow '{execution_id}': scheduling point {seq} "
            f"recorded '{expected}' but replay scheduled '{actual}'"
        )


class WorkflowCancelledError(DurasagaError):
    """Cancellation observed by the workflow at a resumption point"""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Workflow execution '{execution_id}' was cancelled")


class SagaStateError(DurasagaError):
    """Saga run state invariant violated"""


def error_to_dict(error: BaseException) -> dict[str, Any]:
    """Serializable description of an error for the execution history."""
    if isinstance(error, ActivityError):
        return error.to_dict()
    return {
        "type": type(error).__name__,
        "message": str(error),
        "retryable": True,
    }
