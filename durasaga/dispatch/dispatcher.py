"""
Activity Dispatcher - places activity attempts on task queues and settles
their reports.

The dispatcher tracks one outstanding entry per ``task_id`` (one scheduling
point of one execution). Every report names the attempt it belongs to;
reports for any other attempt are stale and ignored. Failures go through the
retry policy evaluator: a retry re-enqueues the next attempt after the
backoff delay, exhaustion is reported to the engine as terminal.

Usage:
    >>> dispatcher = ActivityDispatcher(TaskQueueRegistry("memory://"))
    >>> handle = await dispatcher.schedule(task, RetryPolicy(max_attempts=3))
    >>> claimed = await dispatcher.poll("PAYMENT_ACTIVITY_TASK_QUEUE", "worker-1")
    >>> await dispatcher.complete(handle, {"payment_id": "P1"})
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from durasaga.core.exceptions import ActivityTimeoutError, error_to_dict
from durasaga.core.retry import RetryDecision, RetryPolicy, evaluate_retry
from durasaga.core.types import ActivityTask, TaskHandle
from durasaga.dispatch.registry import TaskQueueRegistry

logger = logging.getLogger(__name__)

CompletedCallback = Callable[[ActivityTask, Any], Awaitable[None]]
FailedCallback = Callable[[ActivityTask, dict[str, Any]], Awaitable[None]]
AttemptFailedCallback = Callable[[ActivityTask, dict[str, Any], RetryDecision], Awaitable[None]]


@dataclass
class _Outstanding:
    task: ActivityTask
    policy: RetryPolicy
    timer: asyncio.TimerHandle | None = None
    settled_attempt: int = 0


def handle_for(task: ActivityTask) -> TaskHandle:
    return TaskHandle(task_id=task.task_id, attempt=task.attempt, task_queue=task.task_queue)


class ActivityDispatcher:
    """
    Schedules activity tasks and applies retry policy and timeouts.

    Callbacks (normally wired by the workflow engine):
        on_task_completed(task, result): terminal success
        on_task_failed(task, error): terminal failure (exhausted or non-retryable)
        on_attempt_failed(task, error, decision): one attempt failed, retry follows
    """

    def __init__(
        self,
        queues: TaskQueueRegistry | None = None,
        default_retry_policy: RetryPolicy | None = None,
        on_task_completed: CompletedCallback | None = None,
        on_task_failed: FailedCallback | None = None,
        on_attempt_failed: AttemptFailedCallback | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.queues = queues or TaskQueueRegistry()
        self.default_retry_policy = default_retry_policy or RetryPolicy()
        self.on_task_completed = on_task_completed
        self.on_task_failed = on_task_failed
        self.on_attempt_failed = on_attempt_failed
        self._sleep = sleep
        self._outstanding: dict[str, _Outstanding] = {}
        self._background: set[asyncio.Task] = set()

    @property
    def outstanding_count(self) -> int:
        return len(self._outstanding)

    def outstanding(self, task_id: str) -> ActivityTask | None:
        entry = self._outstanding.get(task_id)
        return entry.task if entry else None

    async def schedule(
        self, task: ActivityTask, retry_policy: RetryPolicy | None = None, replace: bool = False
    ) -> TaskHandle:
        """
        Place an attempt of ``task`` on its queue.

        Scheduling a task id that is already outstanding returns the handle
        of the current attempt without enqueuing anything. With ``replace``
        any copy of the task id still pending or in flight on a durable
        queue (left by a process that crashed) is dropped first, so the
        attempt is always delivered again.
        """
        entry = self._outstanding.get(task.task_id)
        if entry is not None:
            return handle_for(entry.task)

        policy = retry_policy or self.default_retry_policy
        if task.attempt > policy.max_attempts:
            msg = (
                f"Task {task.task_id} attempt {task.attempt} exceeds "
                f"max_attempts={policy.max_attempts}"
            )
            raise ValueError(msg)

        self._outstanding[task.task_id] = _Outstanding(task=task, policy=policy)
        queue = await self.queues.get(task.task_queue)
        if replace and await queue.remove(task.task_id):
            logger.info(f"Replaced stranded copy of task {task.task_id} on {task.task_queue}")
        await queue.put(task)
        logger.debug(
            f"Scheduled {task.activity_type} task {task.task_id} "
            f"attempt {task.attempt} on {task.task_queue}"
        )
        return handle_for(task)

    async def poll(self, task_queue: str, worker_id: str) -> ActivityTask | None:
        """
        Claim the next task on ``task_queue`` and arm its start-to-close timer.

        Tasks nobody is waiting for (left over from an earlier process) are
        acknowledged and skipped.
        """
        queue = await self.queues.get(task_queue)
        while True:
            task = await queue.claim(worker_id)
            if task is None:
                return None

            entry = self._outstanding.get(task.task_id)
            if entry is None or entry.task.attempt != task.attempt:
                logger.warning(
                    f"Dropping orphaned task {task.task_id} attempt {task.attempt} "
                    f"from {task_queue}"
                )
                await queue.ack(task.task_id)
                continue

            loop = asyncio.get_running_loop()
            entry.timer = loop.call_later(
                task.start_to_close_timeout, self._on_timeout, handle_for(task)
            )
            return task

    def _settle(self, handle: TaskHandle) -> _Outstanding | None:
        """Mark the attempt as reported, or return None for a stale report."""
        entry = self._outstanding.get(handle.task_id)
        if entry is None or entry.task.attempt != handle.attempt or entry.settled_attempt >= handle.attempt:
            logger.info(f"Ignoring stale report for task {handle.task_id} attempt {handle.attempt}")
            return None
        entry.settled_attempt = handle.attempt
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        return entry

    async def complete(self, handle: TaskHandle, result: Any = None) -> bool:
        """
        Report success for one attempt.

        Returns:
            False if the report was stale and ignored
        """
        entry = self._settle(handle)
        if entry is None:
            return False

        queue = await self.queues.get(handle.task_queue)
        await queue.ack(handle.task_id)

        logger.debug(f"Task {handle.task_id} completed on attempt {handle.attempt}")
        if not await self._report(self.on_task_completed, entry.task, result):
            self._redeliver(entry)
            return True
        del self._outstanding[handle.task_id]
        return True

    async def fail(
        self, handle: TaskHandle, error: BaseException | dict[str, Any], retryable: bool = True
    ) -> bool:
        """
        Report failure for one attempt.

        Returns:
            False if the report was stale and ignored
        """
        entry = self._settle(handle)
        if entry is None:
            return False

        error_info = dict(error) if isinstance(error, dict) else error_to_dict(error)
        error_info["retryable"] = retryable

        queue = await self.queues.get(handle.task_queue)
        await queue.ack(handle.task_id)

        task = entry.task
        decision = evaluate_retry(task.attempt, entry.policy, retryable)

        if decision.retry:
            next_task = task.next_attempt()
            entry.task = next_task
            logger.warning(
                f"Task {task.task_id} ({task.activity_type}) attempt {task.attempt}/"
                f"{entry.policy.max_attempts} failed: {error_info.get('message')}; "
                f"retrying in {decision.delay}s"
            )
            # The retry goes ahead even if the failed attempt could not be recorded
            await self._report(self.on_attempt_failed, task, error_info, decision)
            self._spawn(self._requeue(next_task, decision.delay))
            return True

        logger.error(
            f"Task {task.task_id} ({task.activity_type}) failed terminally on attempt "
            f"{task.attempt}: {error_info.get('message')}"
        )
        if not await self._report(self.on_task_failed, task, error_info):
            self._redeliver(entry)
            return True
        del self._outstanding[task.task_id]
        return True

    async def _report(self, callback, *args) -> bool:
        """Run an engine callback. Returns False if it raised."""
        if callback is None:
            return True
        try:
            await callback(*args)
        except Exception as e:
            task = args[0]
            logger.error(
                f"Could not record report for task {task.task_id} attempt {task.attempt}: "
                f"{type(e).__name__}: {e}"
            )
            return False
        return True

    def _redeliver(self, entry: _Outstanding) -> None:
        """
        Put the same attempt back on its queue after a report could not be
        recorded. The activity runs again and deduplicates on its task id.
        """
        entry.settled_attempt = entry.task.attempt - 1
        delay = entry.policy.initial_interval
        logger.warning(f"Redelivering task {entry.task.task_id} attempt {entry.task.attempt} in {delay}s")
        self._spawn(self._requeue(entry.task, delay))

    async def _requeue(self, task: ActivityTask, delay: float) -> None:
        await self._sleep(delay)
        entry = self._outstanding.get(task.task_id)
        if entry is None or entry.task.attempt != task.attempt:
            return
        queue = await self.queues.get(task.task_queue)
        await queue.put(task)

    def _on_timeout(self, handle: TaskHandle) -> None:
        self._spawn(self._expire(handle))

    async def _expire(self, handle: TaskHandle) -> None:
        entry = self._outstanding.get(handle.task_id)
        if entry is None or entry.task.attempt != handle.attempt:
            return
        entry.timer = None
        queue = await self.queues.get(handle.task_queue)
        await queue.remove(handle.task_id)
        error = ActivityTimeoutError(handle.task_id, handle.attempt, entry.task.start_to_close_timeout)
        logger.warning(str(error))
        await self.fail(handle, error, retryable=True)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def shutdown(self) -> None:
        """Cancel timers and pending retries. Outstanding tasks are dropped."""
        for entry in self._outstanding.values():
            if entry.timer is not None:
                entry.timer.cancel()
        self._outstanding.clear()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
