"""
Tests for the saga coordinator state machine, driven by a scripted invoker.
"""

import pytest

from durasaga.core.exceptions import SagaStateError
from durasaga.core.results import FatalFailure, RetryableFailure, Success
from durasaga.core.types import Event, EventType, ExecutionStatus, WorkflowOutcome
from durasaga.saga.coordinator import (
    CompensationStatus,
    SagaCoordinator,
    SagaDefinition,
    SagaPhase,
    SagaResult,
    SagaRunState,
    SagaStep,
    derive_run_state,
)


class ScriptedInvoker:
    """ActivityInvoker returning canned results and recording every call."""

    def __init__(self, results=None, cancel_after: int | None = None):
        self.execution_id = "wf-1"
        self.results = results or {}
        self.calls = []
        self.cancel_after = cancel_after

    @property
    def cancel_requested(self):
        return self.cancel_after is not None and len(self.calls) >= self.cancel_after

    @property
    def is_replaying(self):
        return False

    async def execute_activity(
        self,
        activity_type,
        input,
        task_queue,
        retry_policy=None,
        start_to_close_timeout=None,
        compensation=False,
        step_index=None,
    ):
        self.calls.append((activity_type, input, task_queue, compensation, step_index))
        return self.results.get(activity_type, Success(f"{activity_type}-out"))


def three_step_saga():
    return SagaDefinition(
        "ThreeStep",
        [
            SagaStep("reserve", "reserve", "Q1", compensation="release"),
            SagaStep("charge", "charge", "Q2", compensation="refund", compensation_queue="Q3"),
            SagaStep("notify", "notify", "Q1"),
        ],
    )


def activity_calls(invoker):
    return [(name, compensation) for name, _, _, compensation, _ in invoker.calls]


class TestSagaDefinition:
    """Tests for SagaDefinition validation."""

    def test_needs_steps(self):
        with pytest.raises(ValueError):
            SagaDefinition("Empty", [])

    def test_duplicate_step_names(self):
        with pytest.raises(ValueError, match="duplicate"):
            SagaDefinition("Dup", [SagaStep("a", "x", "Q"), SagaStep("a", "y", "Q")])

    def test_step_input_builders(self):
        step = SagaStep(
            "refundable",
            "debit",
            "Q",
            compensation="refund",
            input_builder=lambda workflow_input, outputs: {"amount": workflow_input["price"]},
            compensation_input_builder=lambda workflow_input, output: {"payment": output},
        )
        assert step.compensable
        assert step.forward_input({"price": 3}, {}) == {"amount": 3}
        assert step.compensation_input({}, "P1") == {"payment": "P1"}
        assert SagaStep("plain", "x", "Q").forward_input("in", {}) == "in"


class TestForwardPhase:
    """Tests for the forward phase."""

    async def test_all_steps_succeed(self):
        invoker = ScriptedInvoker()
        outcome = await SagaCoordinator(three_step_saga(), invoker).run({"id": 1})

        assert outcome.succeeded
        assert outcome.output == {
            "completed_steps": [0, 1, 2],
            "outputs": {"reserve": "reserve-out", "charge": "charge-out", "notify": "notify-out"},
        }
        assert activity_calls(invoker) == [("reserve", False), ("charge", False), ("notify", False)]
        assert [c[4] for c in invoker.calls] == [0, 1, 2]
        assert outcome.compensations == []

    async def test_first_step_failure_compensates_nothing(self):
        error = {"type": "TransientActivityError", "message": "down", "retryable": True}
        invoker = ScriptedInvoker({"reserve": RetryableFailure(error, attempts=3)})
        outcome = await SagaCoordinator(three_step_saga(), invoker).run({})

        assert not outcome.succeeded
        assert activity_calls(invoker) == [("reserve", False)]
        assert outcome.compensations == []
        assert outcome.output["completed_steps"] == []
        assert outcome.failure["attempts"] == 3
        assert outcome.failure["exhausted"] is True
        assert outcome.failure["cause"]["message"] == "reserve failed: down"


class TestCompensation:
    """Tests for reverse-order compensation."""

    async def test_compensates_completed_steps_in_reverse(self):
        error = {"type": "NonRetryableActivityError", "message": "no", "retryable": False}
        invoker = ScriptedInvoker({"notify": FatalFailure(error, attempts=1)})
        outcome = await SagaCoordinator(three_step_saga(), invoker).run({})

        assert activity_calls(invoker) == [
            ("reserve", False),
            ("charge", False),
            ("notify", False),
            ("refund", True),
            ("release", True),
        ]
        refund_call = invoker.calls[3]
        assert refund_call[1] == "charge-out"
        assert refund_call[2] == "Q3"
        assert refund_call[4] == 1
        assert [c["step_index"] for c in outcome.compensations] == [1, 0]
        assert all(c["status"] == CompensationStatus.COMPENSATED.value for c in outcome.compensations)
        assert outcome.failure["step"] == "notify"
        assert outcome.failure["exhausted"] is False

    async def test_steps_without_compensation_are_skipped(self):
        saga = SagaDefinition(
            "Skip",
            [
                SagaStep("a", "a", "Q", compensation="undo_a"),
                SagaStep("b", "b", "Q"),
                SagaStep("c", "c", "Q"),
            ],
        )
        invoker = ScriptedInvoker({"c": FatalFailure({"message": "x", "retryable": False})})
        outcome = await SagaCoordinator(saga, invoker).run({})

        assert [(c["step"], c["status"]) for c in outcome.compensations] == [
            ("b", "skipped"),
            ("a", "compensated"),
        ]

    async def test_failed_compensation_does_not_stop_the_rest(self):
        invoker = ScriptedInvoker(
            {
                "notify": FatalFailure({"message": "no", "retryable": False}),
                "refund": RetryableFailure({"message": "refund provider down", "retryable": True}, attempts=3),
            }
        )
        outcome = await SagaCoordinator(three_step_saga(), invoker).run({})

        assert activity_calls(invoker)[-2:] == [("refund", True), ("release", True)]
        statuses = {c["step"]: c["status"] for c in outcome.compensations}
        assert statuses == {"charge": "failed", "reserve": "compensated"}
        assert WorkflowOutcome(False, compensations=outcome.compensations).compensation_failures[0]["step"] == "charge"

    async def test_cancellation_after_a_step_compensates(self):
        invoker = ScriptedInvoker(cancel_after=1)
        coordinator = SagaCoordinator(three_step_saga(), invoker)
        outcome = await coordinator.run({})

        assert activity_calls(invoker) == [("reserve", False), ("release", True)]
        assert outcome.failure["step"] == "reserve"
        assert outcome.failure["cause"]["type"] == "WorkflowCancelledError"
        assert coordinator.state.phase == SagaPhase.FAILED
        assert coordinator.state.compensated_steps == [0]

    async def test_cancellation_during_last_step_compensates(self):
        invoker = ScriptedInvoker(cancel_after=3)
        outcome = await SagaCoordinator(three_step_saga(), invoker).run({})

        assert not outcome.succeeded
        assert activity_calls(invoker)[3:] == [("refund", True), ("release", True)]
        assert outcome.failure["step"] == "notify"
        assert [c["status"] for c in outcome.compensations] == ["skipped", "compensated", "compensated"]


class TestSagaRunState:
    """Tests for SagaRunState invariants."""

    def test_completed_steps_grow_in_order(self):
        state = SagaRunState()
        state.start_step(0)
        state.record_completed(0)
        state.start_step(1)
        state.record_completed(1)
        with pytest.raises(SagaStateError):
            state.record_completed(1)

    def test_only_completed_steps_can_be_compensated(self):
        state = SagaRunState()
        state.start_step(0)
        with pytest.raises(SagaStateError):
            state.start_compensation(0)

    def test_no_forward_steps_while_compensating(self):
        state = SagaRunState()
        state.start_step(0)
        state.record_completed(0)
        state.start_compensation(0)
        with pytest.raises(SagaStateError):
            state.start_step(1)
        with pytest.raises(SagaStateError):
            state.record_completed(1)

    def test_derive_from_history(self):
        history = [
            Event(0, EventType.WORKFLOW_STARTED, {}),
            Event(1, EventType.ACTIVITY_SCHEDULED, {"seq": 1, "step_index": 0}),
            Event(2, EventType.ACTIVITY_COMPLETED, {"seq": 1}),
            Event(3, EventType.ACTIVITY_SCHEDULED, {"seq": 2, "step_index": 1}),
            Event(4, EventType.ACTIVITY_FAILED, {"seq": 2}),
            Event(5, EventType.COMPENSATION_SCHEDULED, {"seq": 3, "step_index": 0}),
        ]
        state = derive_run_state(history)
        assert state.to_dict() == {
            "current_step_index": 0,
            "completed_steps": [0],
            "compensated_steps": [],
            "phase": "compensating",
        }

        history += [
            Event(6, EventType.COMPENSATION_COMPLETED, {"seq": 3}),
            Event(7, EventType.WORKFLOW_FAILED, {}),
        ]
        state = derive_run_state(history)
        assert state.compensated_steps == [0]
        assert state.phase == SagaPhase.FAILED

    def test_saga_result_from_outcome(self):
        outcome = WorkflowOutcome(
            succeeded=False,
            output={"completed_steps": [0], "outputs": {"debitPayment": "P1"}},
            failure={"step": "shipOrder", "cause": {"message": "shipOrder failed: nope"}},
            compensations=[{"step": "debitPayment", "status": "compensated"}],
        )
        result = SagaResult.from_outcome(outcome)

        assert result.status == ExecutionStatus.FAILED
        assert result.failed_step == "shipOrder"
        assert result.cause == "shipOrder failed: nope"
        assert result.compensation_failures == []
        assert result.to_dict()["status"] == "failed"
