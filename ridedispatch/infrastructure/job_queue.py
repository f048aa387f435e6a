"""
Durable match job queue on Redis.

Layout
------
* ``<prefix>:payloads``  HASH   job key -> JSON payload
* ``<prefix>:ready``     ZSET   job key -> timestamp it becomes deliverable
* ``<prefix>:inflight``  ZSET   job key -> timestamp its delivery lease ends

Delivery is at-least-once: ``dequeue`` moves a job from *ready* to
*inflight* with a visibility lease.  A worker that finishes a job either
cancels it or defers it back into *ready*; a worker that crashes simply lets
the lease run out, after which the next ``dequeue`` reclaims the job.  All
multi-key moves run as Lua scripts so concurrent workers never both receive
the same delivery.

Job keys embed ``retry_count`` (``ride_match_<ride>_retry_<n>``), so a
redelivered or duplicate job is recognisable as stale by the worker.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Optional

import redis.asyncio as aioredis

from .redis_client import redis_call
from ridedispatch.domain.entities import MatchJob

logger = logging.getLogger(__name__)

_DEQUEUE_LUA = """
local now = tonumber(ARGV[1])
local lease = tonumber(ARGV[2])
local expired = redis.call("zrangebyscore", KEYS[2], "-inf", now)
for _, key in ipairs(expired) do
    redis.call("zrem", KEYS[2], key)
    redis.call("zadd", KEYS[1], now, key)
end
while true do
    local ready = redis.call("zrangebyscore", KEYS[1], "-inf", now, "LIMIT", 0, 1)
    if #ready == 0 then
        return false
    end
    local key = ready[1]
    redis.call("zrem", KEYS[1], key)
    local payload = redis.call("hget", KEYS[3], key)
    if payload then
        redis.call("zadd", KEYS[2], now + lease, key)
        return {key, payload}
    end
end
"""

_DEFER_LUA = """
if redis.call("hexists", KEYS[3], ARGV[1]) == 0 then
    return 0
end
if ARGV[3] ~= "" then
    redis.call("hset", KEYS[3], ARGV[1], ARGV[3])
end
redis.call("zrem", KEYS[2], ARGV[1])
redis.call("zadd", KEYS[1], ARGV[2], ARGV[1])
return 1
"""

_CANCEL_LUA = """
redis.call("zrem", KEYS[1], ARGV[1])
redis.call("zrem", KEYS[2], ARGV[1])
return redis.call("hdel", KEYS[3], ARGV[1])
"""


class RedisMatchJobQueue:
    def __init__(
        self,
        client: aioredis.Redis,
        *,
        prefix: str = "ride-matching",
        visibility_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = client
        self.visibility_seconds = visibility_seconds
        self.clock = clock
        self._ready = f"{prefix}:ready"
        self._inflight = f"{prefix}:inflight"
        self._payloads = f"{prefix}:payloads"

    @property
    def _keys(self) -> tuple[str, str, str]:
        return self._ready, self._inflight, self._payloads

    @redis_call("Match job queue")
    async def enqueue(self, job: MatchJob, delay: float = 0.0) -> None:
        """Add (or overwrite) a job; it becomes deliverable after *delay* seconds."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._payloads, job.key, _dumps(job.payload))
            pipe.zrem(self._inflight, job.key)
            pipe.zadd(self._ready, {job.key: self.clock() + delay})
            await pipe.execute()

    @redis_call("Match job queue")
    async def dequeue(self) -> Optional[MatchJob]:
        while True:
            found = await self.redis.eval(
                _DEQUEUE_LUA, 3, *self._keys, self.clock(), self.visibility_seconds
            )
            if not found:
                return None
            key, payload = found
            try:
                return MatchJob.from_queue(key, json.loads(payload))
            except ValueError:
                # An unparseable key can never be processed
                logger.error("Dropping malformed match job %r", key)
                await self.redis.eval(_CANCEL_LUA, 3, *self._keys, key)

    @redis_call("Match job queue")
    async def defer(
        self, key: str, delay: float, payload: Optional[dict[str, Any]] = None
    ) -> bool:
        """
        Put a job back into *ready* after *delay* seconds.

        Returns False (and does nothing) if the job was cancelled meanwhile,
        so a cancelled job can never be resurrected by a slow worker.
        """
        encoded = _dumps(payload) if payload is not None else ""
        return bool(
            await self.redis.eval(
                _DEFER_LUA, 3, *self._keys, key, self.clock() + delay, encoded
            )
        )

    @redis_call("Match job queue")
    async def cancel(self, key: str) -> bool:
        return bool(await self.redis.eval(_CANCEL_LUA, 3, *self._keys, key))

    @redis_call("Match job queue")
    async def stats(self) -> dict[str, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self._ready)
            pipe.zcard(self._inflight)
            ready, inflight = await pipe.execute()
        return {"ready": ready, "inflight": inflight}


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)
