"""
Geospatial driver index on Redis GEO sets.

One sorted set per vehicle type (``drivers:locations:<vehicle_type>``)
holds the positions of available drivers.  ``nearby`` is a single
``GEOSEARCH ... BYRADIUS ... ASC COUNT`` round trip, so results come back
already ordered by distance.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from .redis_client import redis_call
from ridedispatch.domain.entities import Coordinates
from ridedispatch.domain.enums import VehicleType
from ridedispatch.domain.matching import Candidate


class RedisDriverIndex:
    def __init__(self, client: aioredis.Redis, prefix: str = "drivers:locations"):
        self.redis = client
        self.prefix = prefix

    def _key(self, vehicle_type: VehicleType) -> str:
        return f"{self.prefix}:{VehicleType(vehicle_type).value}"

    @redis_call("Driver index")
    async def add(
        self, vehicle_type: VehicleType, driver_id: int, position: Coordinates
    ) -> None:
        await self.redis.geoadd(
            self._key(vehicle_type),
            [position.longitude, position.latitude, str(driver_id)],
        )

    @redis_call("Driver index")
    async def remove(self, vehicle_type: VehicleType, driver_id: int) -> None:
        await self.redis.zrem(self._key(vehicle_type), str(driver_id))

    @redis_call("Driver index")
    async def nearby(
        self,
        vehicle_type: VehicleType,
        point: Coordinates,
        radius_km: float,
        limit: int,
    ) -> list[Candidate]:
        results = await self.redis.geosearch(
            self._key(vehicle_type),
            longitude=point.longitude,
            latitude=point.latitude,
            radius=radius_km,
            unit="km",
            sort="ASC",
            count=limit,
            withdist=True,
            withcoord=True,
        )
        return [
            Candidate(
                driver_id=int(member),
                distance_km=float(dist),
                position=Coordinates(longitude=float(lon), latitude=float(lat)),
            )
            for member, dist, (lon, lat) in results
        ]
