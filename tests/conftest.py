"""
Pytest configuration and shared fixtures for engine tests

Optimizations:
- Retry backoff goes through a recording sleep, never the wall clock
- Workers poll every 10ms
"""

import asyncio
from dataclasses import dataclass, field

import pytest

from durasaga.activities import PaymentActivities, ShippingActivities
from durasaga.core.engine import WorkflowEngine
from durasaga.core.retry import RetryPolicy
from durasaga.dispatch.dispatcher import ActivityDispatcher
from durasaga.dispatch.registry import TaskQueueRegistry
from durasaga.dispatch.worker import ActivityWorker
from durasaga.saga.order import (
    PAYMENT_ACTIVITY_TASK_QUEUE,
    SHIPPING_ACTIVITY_TASK_QUEUE,
    order_saga,
)
from durasaga.storage.backends.memory import InMemoryHistoryStorage


class RecordingSleep:
    """Stands in for asyncio.sleep in the dispatcher; records every delay."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@dataclass
class OrderHarness:
    """Engine, dispatcher and both activity workers wired in one loop."""

    engine: WorkflowEngine
    storage: InMemoryHistoryStorage
    payments: PaymentActivities
    shipping: ShippingActivities
    sleep: RecordingSleep
    workers: list[ActivityWorker] = field(default_factory=list)
    runners: list[asyncio.Task] = field(default_factory=list)

    async def start_workers(self) -> None:
        self.workers = [
            ActivityWorker(
                PAYMENT_ACTIVITY_TASK_QUEUE,
                self.payments.handlers(),
                self.engine.dispatcher,
                poll_interval=0.01,
                handle_signals=False,
            ),
            ActivityWorker(
                SHIPPING_ACTIVITY_TASK_QUEUE,
                self.shipping.handlers(),
                self.engine.dispatcher,
                poll_interval=0.01,
                handle_signals=False,
            ),
        ]
        self.runners = [asyncio.create_task(worker.start()) for worker in self.workers]

    async def stop_workers(self, drain: bool = True) -> None:
        for worker in self.workers:
            await worker.stop(drain=drain)
        await asyncio.gather(*self.runners, return_exceptions=True)
        self.workers, self.runners = [], []

    async def close(self) -> None:
        await self.stop_workers(drain=False)
        await self.engine.shutdown()


def build_order_engine(
    storage=None,
    sleep: RecordingSleep | None = None,
    retry_policy: RetryPolicy | None = None,
    listeners=None,
    queues: TaskQueueRegistry | None = None,
) -> WorkflowEngine:
    dispatcher = ActivityDispatcher(queues or TaskQueueRegistry("memory://"), sleep=sleep or RecordingSleep())
    engine = WorkflowEngine(storage or InMemoryHistoryStorage(), dispatcher, listeners=listeners)
    engine.register(order_saga(retry_policy=retry_policy))
    return engine


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
async def harness_factory(recording_sleep):
    """
    Build OrderHarness instances, optionally over a shared storage (and
    shared task queues) to simulate a process restart. Every harness is
    closed after the test.
    """
    created = []

    async def _make(storage=None, payments=None, shipping=None, start_workers=True, queues=None):
        if storage is None:
            storage = InMemoryHistoryStorage()
        harness = OrderHarness(
            engine=build_order_engine(storage, recording_sleep, queues=queues),
            storage=storage,
            payments=payments or PaymentActivities(),
            shipping=shipping or ShippingActivities(),
            sleep=recording_sleep,
        )
        if start_workers:
            await harness.start_workers()
        created.append(harness)
        return harness

    yield _make
    for harness in created:
        await harness.close()


@pytest.fixture
async def order_harness(harness_factory):
    """Order saga engine with running payment and shipping workers."""
    return await harness_factory()

