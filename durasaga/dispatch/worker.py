"""
Activity Worker - polls one task queue and runs activity handlers.

Workers are bootstrapped explicitly: construct one bound to a queue name and
a handler map, then ``start()`` it and ``stop()`` it. Nothing registers or
starts itself.

Usage:
    >>> payments = PaymentActivities()
    >>> worker = ActivityWorker(
    ...     PAYMENT_ACTIVITY_TASK_QUEUE, payments.handlers(), dispatcher
    ... )
    >>> runner = asyncio.create_task(worker.start())
    >>> ...
    >>> await worker.stop()  # drains in-flight tasks
"""

import asyncio
import logging
import signal
import uuid
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from durasaga.core.exceptions import ActivityError, NonRetryableActivityError
from durasaga.core.types import ActivityInfo, ActivityTask
from durasaga.dispatch.dispatcher import ActivityDispatcher, handle_for

logger = logging.getLogger(__name__)

ActivityHandler = Callable[[Any, ActivityInfo], Awaitable[Any]]


class ActivityWorker:
    """
    Background worker executing activity tasks from a single queue.

    Features:
        - Up to ``max_concurrent`` tasks in flight
        - Error classification: NonRetryableActivityError (or any
          ActivityError with ``retryable = False``) is reported non-retryable,
          every other exception retryable
        - Graceful shutdown on SIGTERM/SIGINT, draining in-flight tasks

    Lifecycle:
        1. Poll the dispatcher for the next task on the queue
        2. Run the handler registered for its activity type
        3. Report completion or failure for that attempt
        4. Sleep ``poll_interval`` when the queue is empty and repeat
    """

    def __init__(
        self,
        task_queue: str,
        handlers: Mapping[str, ActivityHandler],
        dispatcher: ActivityDispatcher,
        worker_id: str | None = None,
        max_concurrent: int = 10,
        poll_interval: float = 0.1,
        handle_signals: bool = True,
    ):
        if max_concurrent < 1:
            msg = f"max_concurrent must be >= 1, got {max_concurrent}"
            raise ValueError(msg)

        self.task_queue = task_queue
        self.handlers = dict(handlers)
        self.dispatcher = dispatcher
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.max_concurrent = max_concurrent
        self.poll_interval = poll_interval
        self.handle_signals = handle_signals

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._in_flight: set[asyncio.Task] = set()
        self._signals_installed: list[signal.Signals] = []
        self._shutdown_task: asyncio.Task | None = None

        self._tasks_completed = 0
        self._tasks_failed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def get_stats(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "task_queue": self.task_queue,
            "running": self._running,
            "in_flight": len(self._in_flight),
            "tasks_completed": self._tasks_completed,
            "tasks_failed": self._tasks_failed,
        }

    async def start(self) -> None:
        """
        Run the polling loop until stop() is called or a shutdown signal
        arrives.
        """
        self._running = True
        self._shutdown_event.clear()

        logger.info(f"Activity worker {self.worker_id} polling {self.task_queue}")
        if self.handle_signals:
            self._setup_signal_handlers()

        try:
            while self._running:
                await self._poll_once()
        finally:
            self._running = False
            self._remove_signal_handlers()
            if self._shutdown_task is not None:
                await self._shutdown_task
                self._shutdown_task = None
            logger.info(f"Activity worker {self.worker_id} stopped")

    async def _poll_once(self) -> None:
        if len(self._in_flight) >= self.max_concurrent:
            waiter = asyncio.ensure_future(self._shutdown_event.wait())
            try:
                await asyncio.wait(
                    [*self._in_flight, waiter], return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                waiter.cancel()
            return

        try:
            task = await self.dispatcher.poll(self.task_queue, self.worker_id)
        except Exception as e:
            logger.error(f"Worker {self.worker_id} poll error: {e}")
            task = None

        if task is None:
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass
            return

        runner = asyncio.create_task(self.run_task(task))
        self._in_flight.add(runner)
        runner.add_done_callback(self._in_flight.discard)

    async def run_task(self, task: ActivityTask) -> None:
        """Execute one attempt and report its outcome to the dispatcher."""
        handle = handle_for(task)
        info = ActivityInfo(
            task_id=task.task_id,
            execution_id=task.execution_id,
            activity_type=task.activity_type,
            attempt=task.attempt,
            task_queue=task.task_queue,
        )

        handler = self.handlers.get(task.activity_type)
        if handler is None:
            error = NonRetryableActivityError(
                f"No handler for activity '{task.activity_type}' on {self.task_queue}"
            )
            logger.error(error.message)
            self._tasks_failed += 1
            await self.dispatcher.fail(handle, error, retryable=False)
            return

        try:
            result = await handler(task.input, info)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            retryable = e.retryable if isinstance(e, ActivityError) else True
            self._tasks_failed += 1
            logger.warning(
                f"Activity {task.activity_type} attempt {task.attempt} failed "
                f"({'retryable' if retryable else 'non-retryable'}): {e}"
            )
            await self.dispatcher.fail(handle, e, retryable=retryable)
        else:
            self._tasks_completed += 1
            await self.dispatcher.complete(handle, result)

    async def stop(self, drain: bool = True) -> None:
        """
        Stop polling. With ``drain`` the in-flight attempts run to completion
        and are reported; otherwise they are cancelled (their attempts will
        time out and be retried).
        """
        logger.info(f"Stopping worker {self.worker_id} (drain={drain})")
        self._running = False
        self._shutdown_event.set()

        pending = list(self._in_flight)
        if not drain:
            for runner in pending:
                runner.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
                self._signals_installed.append(sig)
            except (NotImplementedError, RuntimeError):  # pragma: no cover
                pass  # Windows, or not running in the main thread

    def _remove_signal_handlers(self) -> None:
        if not self._signals_installed:
            return
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()

    def _handle_shutdown(self) -> None:
        logger.info(f"Shutdown signal received for worker {self.worker_id}")
        self._shutdown_task = asyncio.create_task(self.stop())
