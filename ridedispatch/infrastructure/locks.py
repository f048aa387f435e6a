"""
Redis-based driver reservation leases.

A driver who has been offered a ride holds a reservation until they accept,
reject, time out, or the ride is cancelled.  Concurrent dispatch attempts
for other rides must skip a reserved driver even if the geo index still
lists them as available.

Implementation uses SET NX EX for acquire (atomic check-and-set) and a Lua
script for atomic check-and-delete on release, so a late release from a
superseded offer can never drop a newer offer's reservation.  The TTL means
a crashed worker cannot strand a driver.
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis

from .redis_client import redis_call

_RELEASE_LUA = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisReservations:
    def __init__(self, client: aioredis.Redis, prefix: str = "driver:reservation"):
        self.redis = client
        self.prefix = prefix

    def _key(self, driver_id: int) -> str:
        return f"{self.prefix}:{driver_id}"

    @redis_call("Driver reservations")
    async def acquire(self, driver_id: int, token: str, ttl_seconds: int) -> bool:
        """Try to reserve *driver_id* for *token*. Returns True on success."""
        return bool(
            await self.redis.set(self._key(driver_id), token, nx=True, ex=ttl_seconds)
        )

    @redis_call("Driver reservations")
    async def release(self, driver_id: int, token: str) -> bool:
        """Release only if *token* still owns the reservation (atomic via Lua)."""
        return bool(await self.redis.eval(_RELEASE_LUA, 1, self._key(driver_id), token))

    @redis_call("Driver reservations")
    async def holder(self, driver_id: int) -> Optional[str]:
        return await self.redis.get(self._key(driver_id))
