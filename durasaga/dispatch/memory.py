"""
In-Memory Task Queue - for testing and single-process deployments.

Tasks live in process memory and are lost on exit.

Usage:
    >>> queue = InMemoryTaskQueue("PAYMENT_ACTIVITY_TASK_QUEUE")
    >>> await queue.put(task)
    >>> claimed = await queue.claim("worker-1")
    >>> await queue.ack(claimed.task_id)
"""

import asyncio
import time
from collections import deque

from durasaga.core.types import ActivityTask
from durasaga.dispatch.base import TaskQueue


class InMemoryTaskQueue(TaskQueue):
    """
    FIFO task queue backed by a deque.

    A single lock guards pending and in-flight state so concurrent claims
    never hand out the same task twice.
    """

    def __init__(self, name: str):
        super().__init__(name)
        self._pending: deque[ActivityTask] = deque()
        self._in_flight: dict[str, tuple[ActivityTask, float, str]] = {}
        self._lock = asyncio.Lock()

    def _known(self, task_id: str) -> bool:
        return task_id in self._in_flight or any(t.task_id == task_id for t in self._pending)

    async def put(self, task: ActivityTask) -> bool:
        async with self._lock:
            if self._known(task.task_id):
                return False
            self._pending.append(task)
            return True

    async def claim(self, worker_id: str) -> ActivityTask | None:
        async with self._lock:
            if not self._pending:
                return None
            task = self._pending.popleft()
            self._in_flight[task.task_id] = (task, time.monotonic(), worker_id)
            return task

    async def ack(self, task_id: str) -> bool:
        async with self._lock:
            return self._in_flight.pop(task_id, None) is not None

    async def remove(self, task_id: str) -> bool:
        async with self._lock:
            if self._in_flight.pop(task_id, None) is not None:
                return True
            for task in self._pending:
                if task.task_id == task_id:
                    self._pending.remove(task)
                    return True
            return False

    async def release_stuck(self, older_than_seconds: float) -> int:
        cutoff = time.monotonic() - older_than_seconds
        async with self._lock:
            stuck = [tid for tid, (_, claimed_at, _) in self._in_flight.items() if claimed_at < cutoff]
            for task_id in stuck:
                task, _, _ = self._in_flight.pop(task_id)
                self._pending.appendleft(task)
            return len(stuck)

    async def pending_count(self) -> int:
        return len(self._pending)

    async def in_flight_count(self) -> int:
        return len(self._in_flight)

    def claimed_by(self, task_id: str) -> str | None:
        """Worker currently holding a task (testing helper)."""
        entry = self._in_flight.get(task_id)
        return entry[2] if entry else None
