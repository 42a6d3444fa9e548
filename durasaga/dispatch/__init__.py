"""
Activity dispatch: task queues, the dispatcher and activity workers.
"""

from durasaga.dispatch.base import QueueConnectionError, TaskQueue, TaskQueueError
from durasaga.dispatch.dispatcher import ActivityDispatcher, handle_for
from durasaga.dispatch.memory import InMemoryTaskQueue
from durasaga.dispatch.redis import RedisTaskQueue
from durasaga.dispatch.registry import TaskQueueRegistry
from durasaga.dispatch.worker import ActivityHandler, ActivityWorker

__all__ = [
    "ActivityDispatcher",
    "ActivityHandler",
    "ActivityWorker",
    "InMemoryTaskQueue",
    "QueueConnectionError",
    "RedisTaskQueue",
    "TaskQueue",
    "TaskQueueError",
    "TaskQueueRegistry",
    "handle_for",
]
