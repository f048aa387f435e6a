"""
In-process adapters with the same contracts as the Redis ones.

Used when ``settings.backend == "memory"`` (single-process deployments,
local development) and by the test-suite.  Each adapter takes a ``clock``
so expiry can be driven deterministically.

All methods are coroutines that never await, so under asyncio every call
is atomic with respect to other tasks on the same loop.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections import defaultdict
from typing import Any, Callable, Optional

from ridedispatch.domain.distance import distance_km
from ridedispatch.domain.entities import Coordinates, MatchJob
from ridedispatch.domain.enums import VehicleType
from ridedispatch.domain.matching import Candidate, covering_cells, h3_cell

logger = logging.getLogger(__name__)


# ── Driver index ──────────────────────────────────────────────────────


class InMemoryDriverIndex:
    """
    Driver positions binned into H3 cells, one partition per vehicle type.

    Ties on distance are broken by the order in which drivers were first
    indexed, which keeps ``nearby`` deterministic.
    """

    def __init__(self, resolution: int = 7):
        self.resolution = resolution
        self._positions: dict[VehicleType, dict[int, Coordinates]] = defaultdict(dict)
        self._cells: dict[VehicleType, dict[str, set[int]]] = defaultdict(
            lambda: defaultdict(set)
        )
        self._order: dict[int, int] = {}
        self._seq = itertools.count()

    async def add(
        self, vehicle_type: VehicleType, driver_id: int, position: Coordinates
    ) -> None:
        vehicle_type = VehicleType(vehicle_type)
        self._discard(vehicle_type, driver_id)
        self._positions[vehicle_type][driver_id] = position
        self._cells[vehicle_type][h3_cell(position, self.resolution)].add(driver_id)
        self._order.setdefault(driver_id, next(self._seq))

    async def remove(self, vehicle_type: VehicleType, driver_id: int) -> None:
        self._discard(VehicleType(vehicle_type), driver_id)

    async def nearby(
        self,
        vehicle_type: VehicleType,
        point: Coordinates,
        radius_km: float,
        limit: int,
    ) -> list[Candidate]:
        vehicle_type = VehicleType(vehicle_type)
        positions = self._positions[vehicle_type]
        cells = self._cells[vehicle_type]

        found: list[tuple[float, int, Candidate]] = []
        for cell in covering_cells(point, radius_km, self.resolution):
            for driver_id in cells.get(cell, ()):
                position = positions[driver_id]
                dist = distance_km(point, position)
                if dist <= radius_km:
                    found.append(
                        (dist, self._order[driver_id], Candidate(driver_id, dist, position))
                    )
        found.sort(key=lambda item: (item[0], item[1]))
        return [candidate for _, _, candidate in found[:limit]]

    def position_of(self, vehicle_type: VehicleType, driver_id: int) -> Optional[Coordinates]:
        return self._positions[VehicleType(vehicle_type)].get(driver_id)

    def _discard(self, vehicle_type: VehicleType, driver_id: int) -> None:
        position = self._positions[vehicle_type].pop(driver_id, None)
        if position is None:
            return
        cell = h3_cell(position, self.resolution)
        members = self._cells[vehicle_type].get(cell)
        if members is not None:
            members.discard(driver_id)
            if not members:
                del self._cells[vehicle_type][cell]


# ── Reservations ──────────────────────────────────────────────────────


class InMemoryReservations:
    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._leases: dict[int, tuple[str, float]] = {}

    async def acquire(self, driver_id: int, token: str, ttl_seconds: int) -> bool:
        if await self.holder(driver_id) is not None:
            return False
        self._leases[driver_id] = (token, self.clock() + ttl_seconds)
        return True

    async def release(self, driver_id: int, token: str) -> bool:
        if await self.holder(driver_id) != token:
            return False
        del self._leases[driver_id]
        return True

    async def holder(self, driver_id: int) -> Optional[str]:
        lease = self._leases.get(driver_id)
        if lease is None:
            return None
        token, expires_at = lease
        if expires_at <= self.clock():
            del self._leases[driver_id]
            return None
        return token


# ── Match job queue ───────────────────────────────────────────────────


class InMemoryMatchJobQueue:
    """Ready / in-flight bookkeeping identical to ``RedisMatchJobQueue``."""

    def __init__(
        self,
        *,
        visibility_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        self.visibility_seconds = visibility_seconds
        self.clock = clock
        self._payloads: dict[str, dict[str, Any]] = {}
        self._ready: dict[str, tuple[float, int]] = {}
        self._inflight: dict[str, float] = {}
        self._seq = itertools.count()

    async def enqueue(self, job: MatchJob, delay: float = 0.0) -> None:
        self._payloads[job.key] = dict(job.payload)
        self._inflight.pop(job.key, None)
        self._ready[job.key] = (self.clock() + delay, next(self._seq))

    async def dequeue(self) -> Optional[MatchJob]:
        now = self.clock()
        for key, lease_end in list(self._inflight.items()):
            if lease_end <= now:
                del self._inflight[key]
                self._ready[key] = (now, next(self._seq))

        due = sorted(
            (score, key) for key, score in self._ready.items() if score[0] <= now
        )
        for _, key in due:
            del self._ready[key]
            try:
                job = MatchJob.from_queue(key, dict(self._payloads[key]))
            except ValueError:
                logger.error("Dropping malformed match job %r", key)
                self._payloads.pop(key, None)
                continue
            self._inflight[key] = now + self.visibility_seconds
            return job
        return None

    async def defer(
        self, key: str, delay: float, payload: Optional[dict[str, Any]] = None
    ) -> bool:
        if key not in self._payloads:
            return False
        if payload is not None:
            self._payloads[key] = dict(payload)
        self._inflight.pop(key, None)
        self._ready[key] = (self.clock() + delay, next(self._seq))
        return True

    async def cancel(self, key: str) -> bool:
        self._ready.pop(key, None)
        self._inflight.pop(key, None)
        return self._payloads.pop(key, None) is not None

    async def stats(self) -> dict[str, int]:
        return {"ready": len(self._ready), "inflight": len(self._inflight)}

    def keys(self) -> list[str]:
        return sorted(self._payloads)

    def payload(self, key: str) -> Optional[dict[str, Any]]:
        return self._payloads.get(key)


# ── Notifications ─────────────────────────────────────────────────────


class RecordingNotifier:
    """Notification sink that keeps every delivered message in order."""

    def __init__(self):
        self.sent: list = []

    async def send(self, notification) -> None:
        logger.debug("Notification %s -> %s", notification.type, notification.channel)
        self.sent.append(notification)

    def for_channel(self, channel: str) -> list:
        return [n for n in self.sent if n.channel == channel]

    def types_for(self, channel: str) -> list[str]:
        return [n.type for n in self.for_channel(channel)]
