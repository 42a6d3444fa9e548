"""
Task Queue - abstract interface for activity task channels.

A task queue is an ordered, named channel between the dispatcher and the
activity workers polling it. Claims are exclusive: no two workers receive
the same attempt.
"""

from abc import ABC, abstractmethod

from durasaga.core.types import ActivityTask


class TaskQueueError(Exception):
    """Base exception for task queue errors."""


class QueueConnectionError(TaskQueueError):
    """Error connecting to the queue backend."""


class TaskQueue(ABC):
    """
    Abstract base class for task queue backends.

    Lifecycle of a task on a queue:
        put -> pending -> claim -> in flight -> ack (or remove)

    ``put`` is idempotent on ``task_id``: while a task id is pending or in
    flight, putting it again is a no-op. A copy stranded in flight by a
    crashed process must be removed before it can be put again.
    """

    def __init__(self, name: str):
        self.name = name

    async def connect(self) -> None:
        """Open the backend connection. Optional."""

    @abstractmethod
    async def put(self, task: ActivityTask) -> bool:
        """
        Enqueue a task at the tail.

        Returns:
            False if the task id was already pending or in flight
        """

    @abstractmethod
    async def claim(self, worker_id: str) -> ActivityTask | None:
        """Take the head task and mark it in flight, or None when empty."""

    @abstractmethod
    async def ack(self, task_id: str) -> bool:
        """Forget an in-flight task once its attempt has been reported."""

    @abstractmethod
    async def remove(self, task_id: str) -> bool:
        """Drop a task whether pending or in flight."""

    @abstractmethod
    async def release_stuck(self, older_than_seconds: float) -> int:
        """
        Return in-flight tasks claimed longer ago than the threshold to the
        pending list (worker crashed without reporting).

        Returns:
            Number of tasks released
        """

    @abstractmethod
    async def pending_count(self) -> int:
        """Number of tasks waiting to be claimed."""

    @abstractmethod
    async def in_flight_count(self) -> int:
        """Number of claimed, unacknowledged tasks."""

    async def close(self) -> None:
        """Release backend resources."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
