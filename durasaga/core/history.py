"""
Execution history helpers.

The history is append-only and is the sole durable source of truth. This
module derives everything the engine needs from it: status transitions,
the per-scheduling-point index used during replay, and the outcome of a
terminal execution.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from durasaga.core.types import (
    SCHEDULING_EVENTS,
    TERMINAL_ACTIVITY_EVENTS,
    Event,
    EventType,
    ExecutionStatus,
    WorkflowOutcome,
)


@dataclass
class HistoryIndex:
    """
    Lookup tables over a history, keyed by scheduling point ``seq``.

    Kept incrementally up to date by ``add`` so the engine never rescans
    the full history on append.
    """

    scheduled: dict[int, Event] = field(default_factory=dict)
    terminal: dict[int, Event] = field(default_factory=dict)
    markers: dict[int, Event] = field(default_factory=dict)
    attempt_failures: dict[int, list[Event]] = field(default_factory=dict)
    cancel_sequences: list[int] = field(default_factory=list)
    workflow_terminal: Event | None = None

    @classmethod
    def build(cls, events: Iterable[Event]) -> HistoryIndex:
        index = cls()
        for event in events:
            index.add(event)
        return index

    def add(self, event: Event) -> None:
        seq = event.seq
        if event.event_type in SCHEDULING_EVENTS:
            self.scheduled[seq] = event
        elif event.event_type in TERMINAL_ACTIVITY_EVENTS:
            self.terminal[seq] = event
        elif event.event_type == EventType.ACTIVITY_ATTEMPT_FAILED:
            self.attempt_failures.setdefault(seq, []).append(event)
        elif event.event_type == EventType.MARKER_RECORDED:
            self.markers[seq] = event
        elif event.event_type == EventType.CANCEL_REQUESTED:
            self.cancel_sequences.append(event.sequence)
        elif event.event_type in (EventType.WORKFLOW_COMPLETED, EventType.WORKFLOW_FAILED):
            self.workflow_terminal = event

    def last_attempt(self, seq: int) -> int:
        """Highest attempt number dispatched for a scheduling point."""
        failures = self.attempt_failures.get(seq, [])
        if not failures:
            return 1
        return failures[-1].attributes.get("next_attempt") or failures[-1].attributes["attempt"]

    def cancel_requested_before(self, sequence: int) -> bool:
        return any(s <= sequence for s in self.cancel_sequences)


def outcome_from_history(events: list[Event]) -> WorkflowOutcome | None:
    """Return the recorded outcome of a terminal execution, or None."""
    for event in reversed(events):
        if event.event_type == EventType.WORKFLOW_COMPLETED:
            return WorkflowOutcome(
                succeeded=True,
                output=event.attributes.get("output"),
                compensations=event.attributes.get("compensations") or [],
            )
        if event.event_type == EventType.WORKFLOW_FAILED:
            return WorkflowOutcome(
                succeeded=False,
                output=event.attributes.get("output"),
                failure=event.attributes.get("failure"),
                compensations=event.attributes.get("compensations") or [],
            )
    return None


def advance_status(status: ExecutionStatus, event_type: EventType) -> ExecutionStatus:
    """
    Status after appending one event.

    RUNNING until the first compensation is scheduled, COMPENSATING after
    that, COMPLETED/FAILED once the matching workflow event is recorded.
    """
    if status.is_terminal:
        return status
    if event_type == EventType.WORKFLOW_COMPLETED:
        return ExecutionStatus.COMPLETED
    if event_type == EventType.WORKFLOW_FAILED:
        return ExecutionStatus.FAILED
    if event_type == EventType.COMPENSATION_SCHEDULED:
        return ExecutionStatus.COMPENSATING
    return status
