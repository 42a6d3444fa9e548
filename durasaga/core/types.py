"""
All type definitions, enums, and dataclasses shared by the engine.

The execution history is the only durable source of truth; everything in
this module is either a fact recorded in that history (``Event``), a
projection of it (``ExecutionStatus``), or a value handed across the
engine/dispatcher boundary (``ActivityTask``, ``WorkflowOutcome``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ExecutionStatus(Enum):
    """
    Status of a workflow execution.

    State transitions:
        RUNNING → COMPLETED
           ↓
        COMPENSATING → FAILED
           (RUNNING → FAILED when there is nothing to compensate)
    """

    RUNNING = "running"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


TERMINAL_STATUSES = (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class EventType(Enum):
    """Tagged facts appended to an execution history"""

    WORKFLOW_STARTED = "WorkflowStarted"
    ACTIVITY_SCHEDULED = "ActivityScheduled"
    ACTIVITY_ATTEMPT_FAILED = "ActivityAttemptFailed"
    ACTIVITY_COMPLETED = "ActivityCompleted"
    ACTIVITY_FAILED = "ActivityFailed"
    COMPENSATION_SCHEDULED = "CompensationScheduled"
    COMPENSATION_COMPLETED = "CompensationCompleted"
    COMPENSATION_FAILED = "CompensationFailed"
    MARKER_RECORDED = "MarkerRecorded"
    CANCEL_REQUESTED = "CancelRequested"
    WORKFLOW_COMPLETED = "WorkflowCompleted"
    WORKFLOW_FAILED = "WorkflowFailed"


SCHEDULING_EVENTS = (EventType.ACTIVITY_SCHEDULED, EventType.COMPENSATION_SCHEDULED)

SUCCESS_EVENTS = (EventType.ACTIVITY_COMPLETED, EventType.COMPENSATION_COMPLETED)

FAILURE_EVENTS = (EventType.ACTIVITY_FAILED, EventType.COMPENSATION_FAILED)

# Events that close a scheduling point
TERMINAL_ACTIVITY_EVENTS = SUCCESS_EVENTS + FAILURE_EVENTS


@dataclass
class Event:
    """
    A single entry in an execution history.

    Attributes:
        sequence: 0-based position in the history
        event_type: What happened
        attributes: Event payload (scheduling point ``seq``, result, error, ...)
        timestamp: When the engine appended the event
    """

    sequence: int
    event_type: EventType
    attributes: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def seq(self) -> int | None:
        """Scheduling point this event belongs to, if any."""
        return self.attributes.get("seq")

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "event_type": self.event_type.value,
            "attributes": self.attributes,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        timestamp = data.get("timestamp")
        return cls(
            sequence=data["sequence"],
            event_type=EventType(data["event_type"]),
            attributes=data.get("attributes") or {},
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.now(UTC),
        )


@dataclass
class WorkflowExecution:
    """
    A workflow execution and its append-only history.

    Owned exclusively by the workflow engine. Mutated only by appending
    events; ``status`` is a projection the engine keeps in sync.
    """

    execution_id: str
    definition_ref: str
    input: Any = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    history: list[Event] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def next_sequence(self) -> int:
        return len(self.history)

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "definition_ref": self.definition_ref,
            "input": self.input,
            "status": self.status.value,
            "history": [event.to_dict() for event in self.history],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class ActivityTask:
    """
    One attempt of an activity invocation placed on a task queue.

    ``task_id`` is stable across attempts of the same scheduling point and is
    the idempotency token handed to activity implementations.
    """

    task_id: str
    execution_id: str
    activity_type: str
    input: Any
    task_queue: str
    attempt: int = 1
    start_to_close_timeout: float = 60.0
    scheduled_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def next_attempt(self) -> ActivityTask:
        """Copy of this task for the following attempt."""
        return ActivityTask(
            task_id=self.task_id,
            execution_id=self.execution_id,
            activity_type=self.activity_type,
            input=self.input,
            task_queue=self.task_queue,
            attempt=self.attempt + 1,
            start_to_close_timeout=self.start_to_close_timeout,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "execution_id": self.execution_id,
            "activity_type": self.activity_type,
            "input": self.input,
            "task_queue": self.task_queue,
            "attempt": self.attempt,
            "start_to_close_timeout": self.start_to_close_timeout,
            "scheduled_at": self.scheduled_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActivityTask:
        scheduled_at = data.get("scheduled_at")
        return cls(
            task_id=data["task_id"],
            execution_id=data["execution_id"],
            activity_type=data["activity_type"],
            input=data.get("input"),
            task_queue=data["task_queue"],
            attempt=data.get("attempt", 1),
            start_to_close_timeout=data.get("start_to_close_timeout", 60.0),
            scheduled_at=datetime.fromisoformat(scheduled_at) if scheduled_at else datetime.now(UTC),
        )


@dataclass(frozen=True)
class TaskHandle:
    """Identifies one attempt of a task. Reports for other attempts are stale."""

    task_id: str
    attempt: int
    task_queue: str


@dataclass(frozen=True)
class ActivityInfo:
    """Execution details passed to an activity implementation."""

    task_id: str
    execution_id: str
    activity_type: str
    attempt: int
    task_queue: str

    @property
    def idempotency_token(self) -> str:
        return self.task_id


@dataclass
class WorkflowOutcome:
    """
    What a workflow definition hands back to the engine.

    The engine appends ``WorkflowCompleted`` when ``succeeded`` is true and
    ``WorkflowFailed`` otherwise.
    """

    succeeded: bool
    output: Any = None
    failure: dict[str, Any] | None = None
    compensations: list[dict[str, Any]] = field(default_factory=list)

    @property
    def compensation_failures(self) -> list[dict[str, Any]]:
        return [c for c in self.compensations if c.get("status") == "failed"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "output": self.output,
            "failure": self.failure,
            "compensations": self.compensations,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowOutcome:
        return cls(
            succeeded=data.get("succeeded", False),
            output=data.get("output"),
            failure=data.get("failure"),
            compensations=data.get("compensations") or [],
        )
