"""
Concurrency safety tests.

Demonstrates:
1. Driver reservations are exclusive (Redis lease logic, mocked Redis).
2. Two simultaneous accepts of the same offer: exactly one wins.
3. Simultaneous ride requests from one rider: exactly one ride is stored.
4. Two rides dispatched at once never reserve the same driver.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ridedispatch.domain.enums import RideStatus
from ridedispatch.domain.errors import Conflict, DependencyFailure
from ridedispatch.infrastructure.locks import RedisReservations
from ridedispatch.infrastructure.memory import InMemoryReservations
from ridedispatch.services.dispatcher import DispatchOutcome
from ridedispatch.services.notifications import MessageType
from tests.conftest import FakeClock, PICKUP, north_of, ride_fields


class TestRedisReservations:
    """Tests the Redis reservation logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        reservations = RedisReservations(mock_redis)
        assert await reservations.acquire(7, "12:0", 30) is True
        mock_redis.set.assert_awaited_once_with(
            "driver:reservation:7", "12:0", nx=True, ex=30
        )

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=None)

        reservations = RedisReservations(mock_redis)
        assert await reservations.acquire(7, "12:0", 30) is False

    @pytest.mark.asyncio
    async def test_release_is_token_checked(self):
        mock_redis = AsyncMock()
        mock_redis.eval = AsyncMock(return_value=0)

        reservations = RedisReservations(mock_redis)
        assert await reservations.release(7, "12:0") is False
        args = mock_redis.eval.await_args.args
        assert args[1:] == (1, "driver:reservation:7", "12:0")

    @pytest.mark.asyncio
    async def test_outage_raises_dependency_failure(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(side_effect=RedisConnectionError("refused"))

        reservations = RedisReservations(mock_redis)
        with pytest.raises(DependencyFailure, match="Driver reservations unavailable"):
            await reservations.acquire(7, "12:0", 30)


class TestInMemoryReservations:
    @pytest.mark.asyncio
    async def test_exclusive_until_expiry(self):
        clock = FakeClock()
        reservations = InMemoryReservations(clock)
        assert await reservations.acquire(1, "a", 30)
        assert not await reservations.acquire(1, "b", 30)

        clock.advance(30)
        assert await reservations.holder(1) is None
        assert await reservations.acquire(1, "b", 30)

    @pytest.mark.asyncio
    async def test_stale_release_keeps_newer_lease(self):
        reservations = InMemoryReservations(FakeClock())
        await reservations.acquire(1, "5:0", 30)
        await reservations.release(1, "5:0")
        await reservations.acquire(1, "5:1", 30)

        assert await reservations.release(1, "5:0") is False
        assert await reservations.holder(1) == "5:1"

    @pytest.mark.asyncio
    async def test_parallel_acquire_has_one_winner(self):
        reservations = InMemoryReservations(FakeClock())
        results = await asyncio.gather(
            *(reservations.acquire(1, f"{n}:0", 30) for n in range(10))
        )
        assert results.count(True) == 1


class TestRacingTransitions:
    @pytest.mark.asyncio
    async def test_double_accept(self, services, recorder, rider, two_drivers):
        near, _ = two_drivers
        ride = await services.lifecycle.create_ride(rider.id, ride_fields())
        await services.dispatcher.process(await services.job_queue.dequeue())

        results = await asyncio.gather(
            services.lifecycle.confirm(ride.id, near.id),
            services.lifecycle.confirm(ride.id, near.id),
            return_exceptions=True,
        )
        conflicts = [r for r in results if isinstance(r, Conflict)]
        accepted = [r for r in results if not isinstance(r, Exception)]
        assert len(accepted) == 1
        assert len(conflicts) == 1
        assert conflicts[0].code == "INVALID_STATUS"
        assert accepted[0].status == RideStatus.DRIVER_ACCEPTED

        await services.notifier.drain()
        assert recorder.types_for(f"rider:{rider.id}") == [MessageType.RIDE_CONFIRMED]

    @pytest.mark.asyncio
    async def test_accept_versus_reject(self, services, rider, two_drivers):
        near, _ = two_drivers
        ride = await services.lifecycle.create_ride(rider.id, ride_fields())
        await services.dispatcher.process(await services.job_queue.dequeue())

        results = await asyncio.gather(
            services.lifecycle.confirm(ride.id, near.id),
            services.lifecycle.reject(ride.id, near.id),
            return_exceptions=True,
        )
        assert sum(isinstance(r, Conflict) for r in results) == 1

        ride = await services.lifecycle.get_ride(ride.id)
        driver = await services.drivers.get_driver(near.id)
        if ride.status == RideStatus.DRIVER_ACCEPTED:
            assert ride.match_attempt.retry_count == 0
            assert driver.decline_count == 0
        else:
            assert ride.match_attempt.attempted_drivers == (near.id,)
            assert driver.decline_count == 1

    @pytest.mark.asyncio
    async def test_simultaneous_requests_create_one_ride(
        self, services, rider, two_drivers
    ):
        results = await asyncio.gather(
            *(services.lifecycle.create_ride(rider.id, ride_fields()) for _ in range(5)),
            return_exceptions=True,
        )
        created = [r for r in results if not isinstance(r, Exception)]
        assert len(created) == 1
        assert all(
            isinstance(r, Conflict) and r.code == "ACTIVE_RIDE_EXISTS"
            for r in results
            if isinstance(r, Exception)
        )
        assert len(services.job_queue.keys()) == 1


class TestParallelDispatch:
    @pytest.mark.asyncio
    async def test_one_driver_two_rides(self, services, make_rider, make_driver):
        driver = await make_driver("Only driver", at=north_of(PICKUP, 1.0))
        rides = [
            await services.lifecycle.create_ride(
                (await make_rider(f"Rider {n}")).id, ride_fields()
            )
            for n in range(2)
        ]
        jobs = [await services.job_queue.dequeue() for _ in rides]

        outcomes = await asyncio.gather(*(services.dispatcher.process(j) for j in jobs))
        assert sorted(outcomes) == sorted(
            [DispatchOutcome.OFFERED, DispatchOutcome.CONTENDED]
        )

        stored = [await services.lifecycle.get_ride(r.id) for r in rides]
        offered = [r for r in stored if r.driver_id == driver.id]
        assert len(offered) == 1
        assert await services.reservations.holder(driver.id) == f"{offered[0].id}:0"
        assert [r.status for r in stored if r.driver_id is None] == [RideStatus.SEARCHING]
