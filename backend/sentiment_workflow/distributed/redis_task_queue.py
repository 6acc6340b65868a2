"""Redis-backed task queue for distributed mode.

Layout under `{key_prefix}{task_queue}:`
- `workflow` / `activity`: shared FIFO lists of task JSON.
- `delayed`: zset of `w|<json>` / `a|<json>` members scored by due time.
- `sticky:<worker_id>`: per-worker zset of workflow tasks scored by the time
  they entered the sticky queue.
- `affinity`: hash workflow_id -> worker_id.
- `pending`: set of workflow ids with a queued decision task.

Routing, promotion of due tasks and sticky expiry run as Lua scripts so that
several workers can poll the same queue without double-delivery.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

import redis.asyncio as redis_async

from ..task_queue import TIMER_REASONS, ActivityTask, WorkflowTask

logger = logging.getLogger(__name__)

_ROUTE_WORKFLOW = """
local function route(body, workflow_id, now, sticky_prefix, timer)
  if not timer and redis.call('SADD', KEYS[1], workflow_id) == 0 then
    return 0
  end
  local owner = redis.call('HGET', KEYS[2], workflow_id)
  if owner then
    redis.call('ZADD', sticky_prefix .. owner, now, body)
    redis.call('SADD', KEYS[4], owner)
  else
    redis.call('RPUSH', KEYS[3], body)
  end
  return 1
end
"""

# KEYS: pending, affinity, shared workflow list, sticky workers set
# ARGV: task json, workflow id, now, sticky key prefix, timer flag ('1' skips coalescing)
_PUT_WORKFLOW_LUA = _ROUTE_WORKFLOW + """
return route(ARGV[1], ARGV[2], ARGV[3], ARGV[4], ARGV[5] == '1')
"""

# KEYS: pending, affinity, shared workflow list, sticky workers set, delayed, activity list
# ARGV: now, sticky key prefix, timer reasons...
_PROMOTE_LUA = _ROUTE_WORKFLOW + """
local due = redis.call('ZRANGEBYSCORE', KEYS[5], '-inf', ARGV[1], 'LIMIT', 0, 100)
for _, member in ipairs(due) do
  redis.call('ZREM', KEYS[5], member)
  local kind = string.sub(member, 1, 1)
  local body = string.sub(member, 3)
  if kind == 'a' then
    redis.call('RPUSH', KEYS[6], body)
  else
    local task = cjson.decode(body)
    local timer = false
    for i = 3, #ARGV do
      if task['reason'] == ARGV[i] then timer = true end
    end
    route(body, task['workflow_id'], ARGV[1], ARGV[2], timer)
  end
end
return #due
"""

# KEYS: sticky workers set, affinity, shared workflow list
# ARGV: cutoff, sticky key prefix
_EXPIRE_STICKY_LUA = """
local moved = 0
for _, worker in ipairs(redis.call('SMEMBERS', KEYS[1])) do
  local key = ARGV[2] .. worker
  local stale = redis.call('ZRANGEBYSCORE', key, '-inf', ARGV[1])
  for _, body in ipairs(stale) do
    redis.call('ZREM', key, body)
    redis.call('RPUSH', KEYS[3], body)
    local workflow_id = cjson.decode(body)['workflow_id']
    if redis.call('HGET', KEYS[2], workflow_id) == worker then
      redis.call('HDEL', KEYS[2], workflow_id)
    end
    moved = moved + 1
  end
  if redis.call('ZCARD', key) == 0 then
    redis.call('SREM', KEYS[1], worker)
  end
end
return moved
"""

# KEYS: worker sticky zset, shared workflow list, pending
# ARGV: timer reasons...
_TAKE_WORKFLOW_LUA = """
local body = nil
local sticky = redis.call('ZPOPMIN', KEYS[1])
if sticky[1] then
  body = sticky[1]
else
  body = redis.call('LPOP', KEYS[2])
end
if not body then
  return false
end
local task = cjson.decode(body)
local timer = false
for i = 1, #ARGV do
  if task['reason'] == ARGV[i] then timer = true end
end
if not timer then
  redis.call('SREM', KEYS[3], task['workflow_id'])
end
return body
"""

# KEYS: worker sticky zset, shared workflow list, affinity, sticky workers set
# ARGV: worker id
_RELEASE_WORKER_LUA = """
for _, body in ipairs(redis.call('ZRANGE', KEYS[1], 0, -1)) do
  redis.call('RPUSH', KEYS[2], body)
end
redis.call('DEL', KEYS[1])
redis.call('SREM', KEYS[4], ARGV[1])
local pairs_ = redis.call('HGETALL', KEYS[3])
for i = 1, #pairs_, 2 do
  if pairs_[i + 1] == ARGV[1] then
    redis.call('HDEL', KEYS[3], pairs_[i])
  end
end
return 1
"""


@dataclass(frozen=True)
class RedisTaskQueueConfig:
    url: str
    task_queue: str = "sentiment-analysis"
    key_prefix: str = "queue:"
    sticky_schedule_to_start_timeout: float = 10.0
    idle_sleep_seconds: float = 0.05


class RedisTaskQueue:
    def __init__(
        self,
        config: RedisTaskQueueConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._clock = clock
        self._client = None
        self._scripts: dict[str, object] = {}

    def _key(self, name: str) -> str:
        return f"{self._config.key_prefix}{self._config.task_queue}:{name}"

    def _sticky_prefix(self) -> str:
        return self._key("sticky:")

    async def _get_client(self):
        if self._client is None:
            self._client = redis_async.from_url(self._config.url, decode_responses=True)
            self._scripts = {
                "put_workflow": self._client.register_script(_PUT_WORKFLOW_LUA),
                "promote": self._client.register_script(_PROMOTE_LUA),
                "expire_sticky": self._client.register_script(_EXPIRE_STICKY_LUA),
                "take_workflow": self._client.register_script(_TAKE_WORKFLOW_LUA),
                "release_worker": self._client.register_script(_RELEASE_WORKER_LUA),
            }
        return self._client

    def _routing_keys(self) -> list[str]:
        return [
            self._key("pending"),
            self._key("affinity"),
            self._key("workflow"),
            self._key("sticky_workers"),
        ]

    async def put_workflow_task(self, task: WorkflowTask, *, delay: float = 0.0) -> None:
        client = await self._get_client()
        body = task.model_dump_json()
        now = self._clock()
        if delay > 0:
            await client.zadd(self._key("delayed"), {f"w|{body}": now + delay})
            return
        await self._scripts["put_workflow"](
            keys=self._routing_keys(),
            args=[
                body,
                task.workflow_id,
                now,
                self._sticky_prefix(),
                "1" if task.reason in TIMER_REASONS else "0",
            ],
        )

    async def put_activity_task(self, task: ActivityTask, *, delay: float = 0.0) -> None:
        client = await self._get_client()
        body = task.model_dump_json()
        if delay > 0:
            await client.zadd(self._key("delayed"), {f"a|{body}": self._clock() + delay})
            return
        await client.rpush(self._key("activity"), body)

    async def _promote_due(self) -> None:
        await self._scripts["promote"](
            keys=[*self._routing_keys(), self._key("delayed"), self._key("activity")],
            args=[self._clock(), self._sticky_prefix(), *sorted(TIMER_REASONS)],
        )

    async def _expire_sticky(self) -> None:
        moved = await self._scripts["expire_sticky"](
            keys=[self._key("sticky_workers"), self._key("affinity"), self._key("workflow")],
            args=[
                self._clock() - self._config.sticky_schedule_to_start_timeout,
                self._sticky_prefix(),
            ],
        )
        if moved:
            logger.info("sticky schedule-to-start timeout; tasks moved to shared queue=%s", moved)

    async def _take_workflow(self, worker_id: str) -> WorkflowTask | None:
        await self._promote_due()
        await self._expire_sticky()
        body = await self._scripts["take_workflow"](
            keys=[
                self._sticky_prefix() + worker_id,
                self._key("workflow"),
                self._key("pending"),
            ],
            args=sorted(TIMER_REASONS),
        )
        if not body:
            return None
        return WorkflowTask.model_validate_json(body)

    async def _take_activity(self) -> ActivityTask | None:
        client = await self._get_client()
        await self._promote_due()
        body = await client.lpop(self._key("activity"))
        if not body:
            return None
        return ActivityTask.model_validate_json(body)

    async def _poll(self, take, timeout: float | None):
        await self._get_client()
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            task = await take()
            if task is not None:
                return task
            if deadline is not None and loop.time() >= deadline:
                return None
            await asyncio.sleep(self._config.idle_sleep_seconds)

    async def poll_workflow_task(
        self, worker_id: str, timeout: float | None = None
    ) -> WorkflowTask | None:
        return await self._poll(lambda: self._take_workflow(worker_id), timeout)

    async def poll_activity_task(
        self, worker_id: str, timeout: float | None = None  # noqa: ARG002
    ) -> ActivityTask | None:
        return await self._poll(self._take_activity, timeout)

    async def set_sticky(self, workflow_id: str, worker_id: str) -> None:
        client = await self._get_client()
        await client.hset(self._key("affinity"), workflow_id, worker_id)

    async def release_sticky(self, workflow_id: str) -> None:
        client = await self._get_client()
        await client.hdel(self._key("affinity"), workflow_id)

    async def release_worker(self, worker_id: str) -> None:
        await self._get_client()
        await self._scripts["release_worker"](
            keys=[
                self._sticky_prefix() + worker_id,
                self._key("workflow"),
                self._key("affinity"),
                self._key("sticky_workers"),
            ],
            args=[worker_id],
        )

    async def affinity_for(self, workflow_id: str) -> str | None:
        client = await self._get_client()
        return await client.hget(self._key("affinity"), workflow_id)

    async def close(self) -> None:
        if self._client is None:
            return
        client = self._client
        self._client = None
        self._scripts = {}
        await client.aclose()
