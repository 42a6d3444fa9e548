"""
Tests for the workflow engine: start, replay, recovery, cancellation and
non-determinism detection.
"""

import asyncio

import pytest

from durasaga.core.engine import WorkflowEngine
from durasaga.core.exceptions import (
    AlreadyRunningError,
    ExecutionIdReuseError,
    ExecutionNotFoundError,
    TransientActivityError,
    UnknownWorkflowError,
)
from durasaga.core.listeners import EngineListener
from durasaga.core.results import Success
from durasaga.core.types import Event, EventType, ExecutionStatus, WorkflowExecution, WorkflowOutcome
from durasaga.dispatch.dispatcher import ActivityDispatcher
from durasaga.dispatch.worker import ActivityWorker
from durasaga.storage.backends.memory import InMemoryHistoryStorage

QUEUE = "TEST_TASK_QUEUE"


class TwoStepWorkflow:
    name = "TwoStep"

    async def run(self, ctx, input):
        first = await ctx.execute_activity("first", input, QUEUE)
        if not isinstance(first, Success):
            return WorkflowOutcome(succeeded=False, failure={"step": "first"})
        if ctx.cancel_requested:
            return WorkflowOutcome(succeeded=False, failure={"cancelled": True})
        second = await ctx.execute_activity("second", first.output, QUEUE)
        return WorkflowOutcome(succeeded=True, output=[first.output, second.output])


class MarkerWorkflow:
    name = "Marker"

    async def run(self, ctx, input):
        token = await ctx.uuid4()
        result = await ctx.execute_activity("first", token, QUEUE)
        return result.output


class BrokenWorkflow:
    name = "Broken"

    async def run(self, ctx, input):
        msg = "definition bug"
        raise RuntimeError(msg)


class Counter:
    """Activity handlers that count their calls."""

    def __init__(self):
        self.calls: dict[str, list] = {"first": [], "second": []}
        self.gate: asyncio.Event | None = None

    async def first(self, input, info):
        self.calls["first"].append((input, info.attempt))
        if self.gate is not None:
            await self.gate.wait()
        return f"first({input})"

    async def second(self, input, info):
        self.calls["second"].append((input, info.attempt))
        return f"second({input})"

    def handlers(self):
        return {"first": self.first, "second": self.second}


class EngineEnv:
    def __init__(self, storage, sleep, listeners=None):
        self.storage = storage
        self.engine = WorkflowEngine(storage, ActivityDispatcher(sleep=sleep), listeners=listeners)
        for definition in (TwoStepWorkflow(), MarkerWorkflow(), BrokenWorkflow()):
            self.engine.register(definition)
        self.activities = Counter()
        self.worker = None
        self.runner = None

    def start_worker(self, handlers=None):
        self.worker = ActivityWorker(
            QUEUE,
            handlers or self.activities.handlers(),
            self.engine.dispatcher,
            poll_interval=0.01,
            handle_signals=False,
        )
        self.runner = asyncio.create_task(self.worker.start())

    async def close(self):
        if self.activities.gate is not None:
            self.activities.gate.set()
        if self.worker is not None:
            await self.worker.stop(drain=False)
            await asyncio.gather(self.runner, return_exceptions=True)
        await self.engine.shutdown()


@pytest.fixture
async def env(recording_sleep):
    environment = EngineEnv(InMemoryHistoryStorage(), recording_sleep)
    environment.start_worker()
    yield environment
    await environment.close()


async def wait_until(predicate, timeout: float = 2.0):
    async def _poll():
        while not await predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


def _types(history):
    return [event.event_type for event in history]


class TestStart:
    """Tests for starting executions."""

    async def test_runs_to_completion(self, env):
        handle = await env.engine.start("wf-1", "TwoStep", "x")
        outcome = await handle.result(timeout=2)

        assert outcome.succeeded
        assert outcome.output == ["first(x)", "second(first(x))"]
        history = await env.engine.history("wf-1")
        assert _types(history) == [
            EventType.WORKFLOW_STARTED,
            EventType.ACTIVITY_SCHEDULED,
            EventType.ACTIVITY_COMPLETED,
            EventType.ACTIVITY_SCHEDULED,
            EventType.ACTIVITY_COMPLETED,
            EventType.WORKFLOW_COMPLETED,
        ]
        assert [e.sequence for e in history] == list(range(6))
        assert [e.seq for e in history[1:5]] == [1, 1, 2, 2]

    async def test_scheduling_event_records_dispatch_details(self, env):
        handle = await env.engine.start("wf-1", "TwoStep", "x")
        await handle.result(timeout=2)
        scheduled = (await env.engine.history("wf-1"))[1]

        assert scheduled.attributes["activity_type"] == "first"
        assert scheduled.attributes["task_queue"] == QUEUE
        assert scheduled.attributes["input"] == "x"
        assert scheduled.attributes["attempt"] == 1
        assert scheduled.attributes["retry_policy"]["max_attempts"] == 3

    async def test_idempotency_token_is_task_id(self, env):
        seen = []

        async def first(input, info):
            seen.append(info.idempotency_token)
            return "ok"

        await env.worker.stop()
        env.start_worker({"first": first, "second": env.activities.second})
        handle = await env.engine.start("wf-9", "TwoStep", "x")
        await handle.result(timeout=2)
        assert seen == ["wf-9:1"]

    async def test_duplicate_start_while_running(self, env):
        env.activities.gate = asyncio.Event()
        await env.engine.start("wf-1", "TwoStep", "x")

        with pytest.raises(AlreadyRunningError):
            await env.engine.start("wf-1", "TwoStep", "x")

        env.activities.gate.set()
        outcome = await env.engine.result("wf-1", timeout=2)
        assert outcome.succeeded

    async def test_reusing_terminal_id_rejected(self, env):
        handle = await env.engine.start("wf-1", "TwoStep", "x")
        await handle.result(timeout=2)

        with pytest.raises(ExecutionIdReuseError):
            await env.engine.start("wf-1", "TwoStep", "x")
        assert len(await env.engine.history("wf-1")) == 6

    async def test_unknown_workflow(self, env):
        with pytest.raises(UnknownWorkflowError):
            await env.engine.start("wf-1", "Nope", None)

    def test_register_rejects_non_definitions(self, recording_sleep):
        engine = WorkflowEngine(dispatcher=ActivityDispatcher(sleep=recording_sleep))
        with pytest.raises(TypeError):
            engine.register(object())

    async def test_definition_exception_fails_execution(self, env):
        handle = await env.engine.start("wf-1", "Broken", None)
        outcome = await handle.result(timeout=2)

        assert outcome.succeeded is False
        assert outcome.failure["cause"]["type"] == "RuntimeError"
        assert (await env.engine.describe("wf-1")).status == ExecutionStatus.FAILED


class TestRetries:
    """Tests for retry bookkeeping in the history."""

    async def test_failed_attempt_recorded_then_retried(self, env, recording_sleep):
        failures = {"left": 1}

        async def flaky(input, info):
            if failures["left"]:
                failures["left"] -= 1
                msg = "provider down"
                raise TransientActivityError(msg)
            return "ok"

        await env.worker.stop()
        env.start_worker({"first": flaky, "second": env.activities.second})

        handle = await env.engine.start("wf-1", "TwoStep", "x")
        outcome = await handle.result(timeout=2)

        assert outcome.succeeded
        history = await env.engine.history("wf-1")
        failed = [e for e in history if e.event_type == EventType.ACTIVITY_ATTEMPT_FAILED]
        assert len(failed) == 1
        assert failed[0].attributes["attempt"] == 1
        assert failed[0].attributes["next_attempt"] == 2
        assert failed[0].attributes["retry_delay"] == 2.0
        assert failed[0].attributes["error"]["message"] == "provider down"
        completed = next(e for e in history if e.event_type == EventType.ACTIVITY_COMPLETED)
        assert completed.attributes["attempt"] == 2
        assert recording_sleep.delays == [2.0]


class TestReplay:
    """Tests for recovery by deterministic replay."""

    async def test_recover_resumes_after_recorded_completion(self, recording_sleep):
        """A completed activity is never dispatched again after a restart."""
        storage = InMemoryHistoryStorage()
        history = [
            Event(0, EventType.WORKFLOW_STARTED, {"definition": "TwoStep", "input": "x"}),
            Event(1, EventType.ACTIVITY_SCHEDULED, {"seq": 1, "activity_type": "first", "task_queue": QUEUE, "input": "x"}),
            Event(2, EventType.ACTIVITY_COMPLETED, {"seq": 1, "activity_type": "first", "attempt": 1, "result": "recorded"}),
        ]
        await storage.create_execution(
            WorkflowExecution("wf-1", "TwoStep", input="x", history=history)
        )

        env = EngineEnv(storage, recording_sleep)
        env.start_worker()
        try:
            handles = await env.engine.recover()
            assert [h.execution_id for h in handles] == ["wf-1"]
            outcome = await handles[0].result(timeout=2)
        finally:
            await env.close()

        assert outcome.output == ["recorded", "second(recorded)"]
        assert env.activities.calls["first"] == []
        assert env.activities.calls["second"] == [("recorded", 1)]

    async def test_recover_redispatches_unfinished_attempt(self, recording_sleep):
        storage = InMemoryHistoryStorage()
        history = [
            Event(0, EventType.WORKFLOW_STARTED, {"definition": "TwoStep", "input": "x"}),
            Event(1, EventType.ACTIVITY_SCHEDULED, {"seq": 1, "activity_type": "first", "task_queue": QUEUE, "input": "x"}),
            Event(2, EventType.ACTIVITY_ATTEMPT_FAILED, {"seq": 1, "activity_type": "first", "attempt": 1, "next_attempt": 2}),
        ]
        await storage.create_execution(WorkflowExecution("wf-1", "TwoStep", input="x", history=history))

        env = EngineEnv(storage, recording_sleep)
        env.start_worker()
        try:
            handles = await env.engine.recover()
            outcome = await handles[0].result(timeout=2)
        finally:
            await env.close()

        assert outcome.succeeded
        assert env.activities.calls["first"] == [("x", 2)]

    async def test_recorded_marker_value_is_reused(self, recording_sleep):
        storage = InMemoryHistoryStorage()
        history = [
            Event(0, EventType.WORKFLOW_STARTED, {"definition": "Marker"}),
            Event(1, EventType.MARKER_RECORDED, {"seq": 1, "name": "uuid4", "value": "fixed-token"}),
        ]
        await storage.create_execution(WorkflowExecution("wf-1", "Marker", history=history))

        env = EngineEnv(storage, recording_sleep)
        env.start_worker()
        try:
            handles = await env.engine.recover()
            outcome = await handles[0].result(timeout=2)
        finally:
            await env.close()

        assert outcome.output == "first(fixed-token)"

    async def test_changed_definition_raises_non_determinism(self, recording_sleep):
        storage = InMemoryHistoryStorage()
        history = [
            Event(0, EventType.WORKFLOW_STARTED, {"definition": "TwoStep", "input": "x"}),
            Event(1, EventType.ACTIVITY_SCHEDULED, {"seq": 1, "activity_type": "somethingElse", "task_queue": QUEUE}),
            Event(2, EventType.ACTIVITY_COMPLETED, {"seq": 1, "result": "r"}),
        ]
        await storage.create_execution(WorkflowExecution("wf-1", "TwoStep", input="x", history=history))

        env = EngineEnv(storage, recording_sleep)
        env.start_worker()
        try:
            handles = await env.engine.recover()
            outcome = await handles[0].result(timeout=2)
        finally:
            await env.close()

        assert outcome.succeeded is False
        assert outcome.failure["cause"]["type"] == "NonDeterminismError"
        assert env.activities.calls == {"first": [], "second": []}

    async def test_recover_skips_terminal_and_unregistered(self, recording_sleep):
        storage = InMemoryHistoryStorage()
        await storage.create_execution(
            WorkflowExecution("wf-x", "Unregistered", history=[Event(0, EventType.WORKFLOW_STARTED, {})])
        )
        await storage.create_execution(
            WorkflowExecution(
                "wf-done",
                "TwoStep",
                status=ExecutionStatus.COMPLETED,
                history=[
                    Event(0, EventType.WORKFLOW_STARTED, {}),
                    Event(1, EventType.WORKFLOW_COMPLETED, {"output": None}),
                ],
            )
        )
        env = EngineEnv(storage, recording_sleep)
        try:
            assert await env.engine.recover() == []
        finally:
            await env.close()

    async def test_shutdown_leaves_execution_active(self, env):
        env.activities.gate = asyncio.Event()
        await env.engine.start("wf-1", "TwoStep", "x")

        async def scheduled():
            return len(env.activities.calls["first"]) == 1

        await wait_until(scheduled)
        await env.engine.shutdown()

        stored = await env.storage.load_execution("wf-1")
        assert stored.status == ExecutionStatus.RUNNING
        assert stored.history[-1].event_type == EventType.ACTIVITY_SCHEDULED


class TestCancel:
    """Tests for cancellation requests."""

    async def test_cancel_observed_at_next_resumption_point(self, env):
        env.activities.gate = asyncio.Event()
        handle = await env.engine.start("wf-1", "TwoStep", "x")

        async def in_flight():
            return len(env.activities.calls["first"]) == 1

        await wait_until(in_flight)
        assert await handle.cancel("customer request") is True
        env.activities.gate.set()

        outcome = await handle.result(timeout=2)
        assert outcome.failure == {"cancelled": True}
        assert env.activities.calls["second"] == []

        history = await env.engine.history("wf-1")
        cancel = next(e for e in history if e.event_type == EventType.CANCEL_REQUESTED)
        assert cancel.attributes["reason"] == "customer request"

    async def test_cancel_terminal_execution_is_noop(self, env):
        handle = await env.engine.start("wf-1", "TwoStep", "x")
        await handle.result(timeout=2)
        assert await env.engine.cancel("wf-1") is False

    async def test_cancel_unknown_execution(self, env):
        with pytest.raises(ExecutionNotFoundError):
            await env.engine.cancel("missing")


class TestQueries:
    """Tests for describe and history."""

    async def test_describe_completed(self, env):
        handle = await env.engine.start("wf-1", "TwoStep", "x")
        await handle.result(timeout=2)
        description = await handle.describe()

        assert description.status == ExecutionStatus.COMPLETED
        assert description.event_count == 6
        assert description.failure is None
        assert description.task_queue is None
        assert description.run_state is None
        assert description.to_dict()["status"] == "completed"

    async def test_describe_unknown(self, env):
        with pytest.raises(ExecutionNotFoundError):
            await env.engine.describe("missing")


class RecordingListener(EngineListener):
    def __init__(self):
        self.events = []

    async def on_execution_started(self, execution_id, workflow, input):
        self.events.append("started")

    async def on_activity_scheduled(self, execution_id, task, compensation):
        self.events.append(f"scheduled:{task.activity_type}")

    async def on_activity_completed(self, execution_id, task, result, compensation):
        self.events.append(f"completed:{task.activity_type}")

    async def on_execution_completed(self, execution_id, workflow, outcome, duration):
        self.events.append("done")


class ExplodingListener(EngineListener):
    async def on_execution_started(self, execution_id, workflow, input):
        msg = "listener bug"
        raise RuntimeError(msg)


class TestListeners:
    """Tests for listener notification."""

    async def test_lifecycle_hooks_in_order(self, recording_sleep):
        listener = RecordingListener()
        env = EngineEnv(InMemoryHistoryStorage(), recording_sleep, listeners=[listener])
        env.start_worker()
        try:
            handle = await env.engine.start("wf-1", "TwoStep", "x")
            await handle.result(timeout=2)
        finally:
            await env.close()

        assert listener.events == [
            "started",
            "scheduled:first",
            "completed:first",
            "scheduled:second",
            "completed:second",
            "done",
        ]

    async def test_listener_errors_do_not_break_execution(self, recording_sleep):
        env = EngineEnv(InMemoryHistoryStorage(), recording_sleep, listeners=[ExplodingListener()])
        env.start_worker()
        try:
            handle = await env.engine.start("wf-1", "TwoStep", "x")
            outcome = await handle.result(timeout=2)
        finally:
            await env.close()
        assert outcome.succeeded
