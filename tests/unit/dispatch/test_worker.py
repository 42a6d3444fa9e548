"""
Tests for ActivityWorker: classification, concurrency and draining.
"""

import asyncio

import pytest

from durasaga.core.exceptions import NonRetryableActivityError, TransientActivityError
from durasaga.core.retry import RetryPolicy
from durasaga.core.types import ActivityTask
from durasaga.dispatch.dispatcher import ActivityDispatcher
from durasaga.dispatch.worker import ActivityWorker

QUEUE = "SHIPPING_ACTIVITY_TASK_QUEUE"


def make_task(seq: int = 1, activity_type: str = "shipOrder") -> ActivityTask:
    return ActivityTask(
        task_id=f"wf-1:{seq}",
        execution_id="wf-1",
        activity_type=activity_type,
        input={"order_id": seq},
        task_queue=QUEUE,
    )


class Outcomes:
    def __init__(self):
        self.completed = {}
        self.failed = {}
        self.retried = []

    async def on_completed(self, task, result):
        self.completed[task.task_id] = result

    async def on_failed(self, task, error):
        self.failed[task.task_id] = error

    async def on_attempt_failed(self, task, error, decision):
        self.retried.append((task.task_id, task.attempt))


@pytest.fixture
def outcomes():
    return Outcomes()


@pytest.fixture
async def dispatcher(outcomes, recording_sleep):
    d = ActivityDispatcher(
        default_retry_policy=RetryPolicy(max_attempts=3, initial_interval=1.0),
        on_task_completed=outcomes.on_completed,
        on_task_failed=outcomes.on_failed,
        on_attempt_failed=outcomes.on_attempt_failed,
        sleep=recording_sleep,
    )
    yield d
    await d.shutdown()


async def run_worker(worker: ActivityWorker, until, timeout: float = 2.0):
    runner = asyncio.create_task(worker.start())
    try:
        async def _wait():
            while not until():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_wait(), timeout)
    finally:
        await worker.stop()
        await runner


class TestActivityWorker:
    """Tests for ActivityWorker."""

    def test_rejects_invalid_concurrency(self, dispatcher):
        with pytest.raises(ValueError):
            ActivityWorker(QUEUE, {}, dispatcher, max_concurrent=0)

    async def test_runs_handler_and_reports_result(self, dispatcher, outcomes):
        seen = []

        async def ship(order, info):
            seen.append((order, info.task_id, info.attempt, info.task_queue))
            return {"tracking_number": "ABCD1234"}

        await dispatcher.schedule(make_task())
        worker = ActivityWorker(QUEUE, {"shipOrder": ship}, dispatcher, poll_interval=0.01, handle_signals=False)
        await run_worker(worker, lambda: outcomes.completed)

        assert seen == [({"order_id": 1}, "wf-1:1", 1, QUEUE)]
        assert outcomes.completed == {"wf-1:1": {"tracking_number": "ABCD1234"}}
        assert worker.get_stats()["tasks_completed"] == 1
        assert worker.is_running is False

    async def test_non_retryable_error_classification(self, dispatcher, outcomes):
        async def ship(order, info):
            msg = "Product 999 cannot be shipped"
            raise NonRetryableActivityError(msg)

        await dispatcher.schedule(make_task())
        worker = ActivityWorker(QUEUE, {"shipOrder": ship}, dispatcher, poll_interval=0.01, handle_signals=False)
        await run_worker(worker, lambda: outcomes.failed)

        assert outcomes.retried == []
        assert outcomes.failed["wf-1:1"]["retryable"] is False

    async def test_unexpected_exceptions_are_retryable(self, dispatcher, outcomes):
        calls = []

        async def ship(order, info):
            calls.append(info.attempt)
            if info.attempt == 1:
                msg = "connection reset"
                raise OSError(msg)
            return "ok"

        await dispatcher.schedule(make_task())
        worker = ActivityWorker(QUEUE, {"shipOrder": ship}, dispatcher, poll_interval=0.01, handle_signals=False)
        await run_worker(worker, lambda: outcomes.completed)

        assert calls == [1, 2]
        assert outcomes.retried == [("wf-1:1", 1)]

    async def test_transient_errors_exhaust_policy(self, dispatcher, outcomes):
        async def ship(order, info):
            msg = "carrier unavailable"
            raise TransientActivityError(msg)

        await dispatcher.schedule(make_task())
        worker = ActivityWorker(QUEUE, {"shipOrder": ship}, dispatcher, poll_interval=0.01, handle_signals=False)
        await run_worker(worker, lambda: outcomes.failed)

        assert [attempt for _, attempt in outcomes.retried] == [1, 2]
        assert worker.get_stats()["tasks_failed"] == 3

    async def test_missing_handler_fails_non_retryable(self, dispatcher, outcomes):
        await dispatcher.schedule(make_task(activity_type="cancelShipment"))
        worker = ActivityWorker(QUEUE, {}, dispatcher, poll_interval=0.01, handle_signals=False)
        await run_worker(worker, lambda: outcomes.failed)

        assert "No handler" in outcomes.failed["wf-1:1"]["message"]
        assert outcomes.failed["wf-1:1"]["retryable"] is False

    async def test_concurrency_is_bounded(self, dispatcher, outcomes):
        running = 0
        peak = 0
        release = asyncio.Event()

        async def ship(order, info):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await release.wait()
            running -= 1
            return "ok"

        for seq in range(1, 6):
            await dispatcher.schedule(make_task(seq))
        worker = ActivityWorker(
            QUEUE, {"shipOrder": ship}, dispatcher, max_concurrent=2, poll_interval=0.01, handle_signals=False
        )
        runner = asyncio.create_task(worker.start())
        await asyncio.sleep(0.05)
        assert peak == 2
        assert worker.in_flight == 2

        release.set()
        while len(outcomes.completed) < 5:
            await asyncio.sleep(0.005)
        await worker.stop()
        await runner
        assert peak == 2

    async def test_stop_drains_in_flight(self, dispatcher, outcomes):
        started = asyncio.Event()

        async def ship(order, info):
            started.set()
            await asyncio.sleep(0.02)
            return "shipped"

        await dispatcher.schedule(make_task())
        worker = ActivityWorker(QUEUE, {"shipOrder": ship}, dispatcher, poll_interval=0.01, handle_signals=False)
        runner = asyncio.create_task(worker.start())
        await started.wait()

        await worker.stop(drain=True)
        await runner
        assert outcomes.completed == {"wf-1:1": "shipped"}

    async def test_stop_without_drain_cancels(self, dispatcher, outcomes):
        started = asyncio.Event()

        async def ship(order, info):
            started.set()
            await asyncio.sleep(10)

        await dispatcher.schedule(make_task())
        worker = ActivityWorker(QUEUE, {"shipOrder": ship}, dispatcher, poll_interval=0.01, handle_signals=False)
        runner = asyncio.create_task(worker.start())
        await started.wait()

        await worker.stop(drain=False)
        await runner
        assert outcomes.completed == {}
        assert worker.in_flight == 0

    async def test_shutdown_signal_drains_before_start_returns(self, dispatcher, outcomes):
        started = asyncio.Event()

        async def ship(order, info):
            started.set()
            await asyncio.sleep(0.02)
            return "shipped"

        await dispatcher.schedule(make_task())
        worker = ActivityWorker(QUEUE, {"shipOrder": ship}, dispatcher, poll_interval=0.01, handle_signals=False)
        runner = asyncio.create_task(worker.start())
        await started.wait()

        worker._handle_shutdown()
        await asyncio.wait_for(runner, 1.0)

        assert outcomes.completed == {"wf-1:1": "shipped"}
        assert worker._shutdown_task is None
        assert not worker.is_running
