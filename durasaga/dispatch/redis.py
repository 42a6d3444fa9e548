"""
Redis Task Queue - task channel that outlives the engine process.

Workers poll through the dispatcher of the engine that scheduled the task,
so a queue serves one engine process at a time. What survives a restart is
the queue content: the recovering engine schedules each unfinished attempt
with ``replace`` so a copy stranded in flight is dropped and delivered
again.

Uses redis-py's asyncio client. Each queue owns three keys:

    <prefix><name>:pending    LIST of task ids (FIFO)
    <prefix><name>:tasks      HASH task id -> serialized ActivityTask
    <prefix><name>:inflight   ZSET task id -> claim time

Claims run as a Lua script so a task id moves from pending to in flight
atomically, whatever the number of competing workers.

Usage:
    >>> queue = RedisTaskQueue("SHIPPING_ACTIVITY_TASK_QUEUE", url="redis://localhost:6379/0")
    >>> await queue.connect()
    >>> await queue.put(task)
"""

import logging
import time

import redis.asyncio as redis

from durasaga.core.types import ActivityTask
from durasaga.dispatch.base import QueueConnectionError, TaskQueue, TaskQueueError
from durasaga.storage.core import deserialize, serialize

logger = logging.getLogger(__name__)

_PUT_SCRIPT = """
if redis.call('HEXISTS', KEYS[2], ARGV[1]) == 1 then
    return 0
end
redis.call('HSET', KEYS[2], ARGV[1], ARGV[2])
redis.call('RPUSH', KEYS[1], ARGV[1])
return 1
"""

_CLAIM_SCRIPT = """
local task_id = redis.call('LPOP', KEYS[1])
if not task_id then
    return nil
end
redis.call('ZADD', KEYS[3], ARGV[1], task_id)
return redis.call('HGET', KEYS[2], task_id)
"""

_RELEASE_SCRIPT = """
local stuck = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', ARGV[1])
for _, task_id in ipairs(stuck) do
    redis.call('ZREM', KEYS[3], task_id)
    redis.call('LPUSH', KEYS[1], task_id)
end
return #stuck
"""


class RedisTaskQueue(TaskQueue):
    """
    Task queue stored in Redis.

    Pending and in-flight tasks survive a process restart. Entries no
    dispatcher is waiting for are acknowledged and dropped when claimed;
    ``release_stuck`` hands long-held claims back to the pending list.
    """

    def __init__(
        self,
        name: str,
        url: str = "redis://localhost:6379/0",
        key_prefix: str = "durasaga:queue:",
        client: redis.Redis | None = None,
    ):
        super().__init__(name)
        self.url = url
        self.key_prefix = key_prefix
        self._client = client
        self._owns_client = client is None
        self._put = None
        self._claim = None
        self._release = None

    @property
    def _keys(self) -> list[str]:
        base = f"{self.key_prefix}{self.name}"
        return [f"{base}:pending", f"{base}:tasks", f"{base}:inflight"]

    async def connect(self) -> None:
        """
        Connect and register the queue scripts.

        Raises:
            QueueConnectionError: If Redis is unreachable
        """
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        try:
            await self._client.ping()
        except Exception as e:
            msg = f"Failed to connect to Redis for queue '{self.name}': {e}"
            raise QueueConnectionError(msg) from e

        self._put = self._client.register_script(_PUT_SCRIPT)
        self._claim = self._client.register_script(_CLAIM_SCRIPT)
        self._release = self._client.register_script(_RELEASE_SCRIPT)
        logger.info(f"Task queue '{self.name}' connected to Redis")

    def _require_connection(self) -> redis.Redis:
        if self._client is None or self._put is None:
            msg = f"Task queue '{self.name}' is not connected"
            raise TaskQueueError(msg)
        return self._client

    async def put(self, task: ActivityTask) -> bool:
        self._require_connection()
        added = await self._put(keys=self._keys, args=[task.task_id, serialize(task.to_dict())])
        return bool(added)

    async def claim(self, worker_id: str) -> ActivityTask | None:
        self._require_connection()
        raw = await self._claim(keys=self._keys, args=[time.time()])
        if raw is None:
            return None
        logger.debug(f"Worker {worker_id} claimed task from '{self.name}'")
        return ActivityTask.from_dict(deserialize(raw))

    async def ack(self, task_id: str) -> bool:
        client = self._require_connection()
        pending, tasks, inflight = self._keys
        async with client.pipeline(transaction=True) as pipe:
            pipe.zrem(inflight, task_id)
            pipe.hdel(tasks, task_id)
            removed, _ = await pipe.execute()
        return bool(removed)

    async def remove(self, task_id: str) -> bool:
        client = self._require_connection()
        pending, tasks, inflight = self._keys
        async with client.pipeline(transaction=True) as pipe:
            pipe.lrem(pending, 0, task_id)
            pipe.zrem(inflight, task_id)
            pipe.hdel(tasks, task_id)
            results = await pipe.execute()
        return any(results)

    async def release_stuck(self, older_than_seconds: float) -> int:
        self._require_connection()
        cutoff = time.time() - older_than_seconds
        released = int(await self._release(keys=self._keys, args=[cutoff]))
        if released:
            logger.warning(f"Released {released} stuck tasks on '{self.name}'")
        return released

    async def pending_count(self) -> int:
        client = self._require_connection()
        return int(await client.llen(self._keys[0]))

    async def in_flight_count(self) -> int:
        client = self._require_connection()
        return int(await client.zcard(self._keys[2]))

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
        self._put = self._claim = self._release = None
