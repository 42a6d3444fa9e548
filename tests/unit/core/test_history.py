"""
Tests for history projections: status transitions, index and outcome.
"""

from durasaga.core.history import (
    HistoryIndex,
    advance_status,
    outcome_from_history,
)
from durasaga.core.results import FatalFailure, RetryableFailure, Success, result_from_event
from durasaga.core.types import Event, EventType, ExecutionStatus


def _history(*specs):
    """Build a history from (event_type, attributes) pairs."""
    return [Event(sequence=i, event_type=t, attributes=a) for i, (t, a) in enumerate(specs)]


STARTED = (EventType.WORKFLOW_STARTED, {"definition": "OrderWorkflow"})


class TestAdvanceStatus:
    """Tests for advance_status."""

    def test_status_follows_history(self):
        transitions = [
            (EventType.WORKFLOW_STARTED, ExecutionStatus.RUNNING),
            (EventType.ACTIVITY_SCHEDULED, ExecutionStatus.RUNNING),
            (EventType.ACTIVITY_COMPLETED, ExecutionStatus.RUNNING),
            (EventType.ACTIVITY_SCHEDULED, ExecutionStatus.RUNNING),
            (EventType.ACTIVITY_FAILED, ExecutionStatus.RUNNING),
            (EventType.COMPENSATION_SCHEDULED, ExecutionStatus.COMPENSATING),
            (EventType.COMPENSATION_COMPLETED, ExecutionStatus.COMPENSATING),
            (EventType.WORKFLOW_FAILED, ExecutionStatus.FAILED),
        ]
        status = ExecutionStatus.RUNNING
        for event_type, expected in transitions:
            status = advance_status(status, event_type)
            assert status == expected

    def test_completion(self):
        assert advance_status(ExecutionStatus.RUNNING, EventType.WORKFLOW_COMPLETED) == ExecutionStatus.COMPLETED

    def test_terminal_status_never_changes(self):
        assert advance_status(ExecutionStatus.COMPLETED, EventType.COMPENSATION_SCHEDULED) == ExecutionStatus.COMPLETED


class TestHistoryIndex:
    """Tests for HistoryIndex lookups."""

    def test_build_indexes_by_seq(self):
        events = _history(
            STARTED,
            (EventType.ACTIVITY_SCHEDULED, {"seq": 1, "activity_type": "debitPayment"}),
            (EventType.ACTIVITY_COMPLETED, {"seq": 1, "result": "P1"}),
            (EventType.MARKER_RECORDED, {"seq": 2, "name": "now", "value": "x"}),
            (EventType.ACTIVITY_SCHEDULED, {"seq": 3, "activity_type": "shipOrder"}),
        )
        index = HistoryIndex.build(events)

        assert set(index.scheduled) == {1, 3}
        assert set(index.terminal) == {1}
        assert set(index.markers) == {2}
        assert index.workflow_terminal is None

    def test_last_attempt_follows_recorded_retries(self):
        events = _history(
            STARTED,
            (EventType.ACTIVITY_SCHEDULED, {"seq": 1}),
            (EventType.ACTIVITY_ATTEMPT_FAILED, {"seq": 1, "attempt": 1, "next_attempt": 2}),
            (EventType.ACTIVITY_ATTEMPT_FAILED, {"seq": 1, "attempt": 2, "next_attempt": 3}),
        )
        index = HistoryIndex.build(events)
        assert index.last_attempt(1) == 3
        assert index.last_attempt(7) == 1

    def test_cancel_requested_before(self):
        events = _history(
            STARTED,
            (EventType.ACTIVITY_SCHEDULED, {"seq": 1}),
            (EventType.CANCEL_REQUESTED, {"reason": "customer"}),
            (EventType.ACTIVITY_COMPLETED, {"seq": 1}),
        )
        index = HistoryIndex.build(events)
        assert index.cancel_requested_before(1) is False
        assert index.cancel_requested_before(2) is True
        assert index.cancel_requested_before(3) is True

    def test_incremental_add_equals_build(self):
        events = _history(
            STARTED,
            (EventType.ACTIVITY_SCHEDULED, {"seq": 1}),
            (EventType.ACTIVITY_COMPLETED, {"seq": 1}),
            (EventType.WORKFLOW_COMPLETED, {}),
        )
        index = HistoryIndex()
        for event in events:
            index.add(event)
        assert index == HistoryIndex.build(events)
        assert index.workflow_terminal is events[-1]


class TestOutcome:
    """Tests for outcome_from_history."""

    def test_no_outcome_while_active(self):
        assert outcome_from_history(_history(STARTED)) is None

    def test_failed_outcome(self):
        events = _history(
            STARTED,
            (
                EventType.WORKFLOW_FAILED,
                {
                    "output": {"completed_steps": [0]},
                    "failure": {"step": "shipOrder"},
                    "compensations": [{"step": "debitPayment", "status": "compensated"}],
                },
            ),
        )
        outcome = outcome_from_history(events)
        assert outcome.succeeded is False
        assert outcome.failure == {"step": "shipOrder"}
        assert outcome.compensations[0]["status"] == "compensated"
        assert outcome.compensation_failures == []


class TestResultFromEvent:
    """Tests for rebuilding tagged step results."""

    def test_success(self):
        event = Event(2, EventType.ACTIVITY_COMPLETED, {"seq": 1, "result": "P1"})
        assert result_from_event(event) == Success("P1")

    def test_exhausted_retryable_failure(self):
        error = {"type": "TransientActivityError", "message": "down", "retryable": True}
        event = Event(6, EventType.ACTIVITY_FAILED, {"seq": 1, "attempt": 3, "error": error})
        result = result_from_event(event)
        assert isinstance(result, RetryableFailure)
        assert result.attempts == 3
        assert result.message == "down"

    def test_fatal_failure(self):
        error = {"type": "NonRetryableActivityError", "message": "bad", "retryable": False}
        event = Event(4, EventType.COMPENSATION_FAILED, {"seq": 3, "attempt": 1, "error": error})
        assert isinstance(result_from_event(event), FatalFailure)


class TestEventSerialization:
    """Tests for Event dict form."""

    def test_round_trip_keeps_type_and_timestamp(self):
        event = Event(1, EventType.ACTIVITY_SCHEDULED, {"seq": 1, "input": {"a": 1}})
        restored = Event.from_dict(event.to_dict())
        assert restored == event
        assert restored.seq == 1
