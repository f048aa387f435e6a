"""Match job queue tests: in-memory semantics and the Redis adapter's calls."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import TimeoutError as RedisTimeoutError

from ridedispatch.domain.entities import Coordinates, MatchJob
from ridedispatch.domain.enums import VehicleType
from ridedispatch.domain.errors import DependencyFailure
from ridedispatch.infrastructure.driver_index import RedisDriverIndex
from ridedispatch.infrastructure.job_queue import RedisMatchJobQueue
from ridedispatch.infrastructure.memory import InMemoryMatchJobQueue
from tests.conftest import FakeClock


def _job(ride_id: int, retry: int = 0, **payload) -> MatchJob:
    return MatchJob(ride_id=ride_id, retry_count=retry, payload=payload)


class TestInMemoryQueue:
    @pytest.mark.asyncio
    async def test_due_jobs_in_ready_order(self):
        clock = FakeClock()
        queue = InMemoryMatchJobQueue(clock=clock)
        await queue.enqueue(_job(2), delay=5)
        await queue.enqueue(_job(1))
        await queue.enqueue(_job(3))

        assert (await queue.dequeue()).ride_id == 1
        assert (await queue.dequeue()).ride_id == 3
        assert await queue.dequeue() is None

        clock.advance(5)
        assert (await queue.dequeue()).ride_id == 2

    @pytest.mark.asyncio
    async def test_lease_expiry_redelivers(self):
        clock = FakeClock()
        queue = InMemoryMatchJobQueue(visibility_seconds=30, clock=clock)
        await queue.enqueue(_job(1, vehicle_type="car"))

        first = await queue.dequeue()
        assert await queue.stats() == {"ready": 0, "inflight": 1}
        clock.advance(29)
        assert await queue.dequeue() is None

        clock.advance(1)
        again = await queue.dequeue()
        assert again.key == first.key
        assert again.payload == {"vehicle_type": "car"}

    @pytest.mark.asyncio
    async def test_defer_replaces_payload(self):
        clock = FakeClock()
        queue = InMemoryMatchJobQueue(clock=clock)
        await queue.enqueue(_job(1, vehicle_type="car"))
        job = await queue.dequeue()

        assert await queue.defer(job.key, 3, payload={**job.payload, "failures": 1})
        assert await queue.dequeue() is None
        clock.advance(3)
        assert (await queue.dequeue()).payload["failures"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_job_cannot_be_deferred_back(self):
        queue = InMemoryMatchJobQueue(clock=FakeClock())
        await queue.enqueue(_job(1))
        job = await queue.dequeue()

        assert await queue.cancel(job.key) is True
        assert await queue.defer(job.key, 0) is False
        assert await queue.dequeue() is None
        assert await queue.cancel(job.key) is False
        assert await queue.stats() == {"ready": 0, "inflight": 0}

    @pytest.mark.asyncio
    async def test_enqueue_same_key_overwrites(self):
        queue = InMemoryMatchJobQueue(clock=FakeClock())
        await queue.enqueue(_job(1, attempt="a"))
        await queue.enqueue(_job(1, attempt="b"))

        assert queue.keys() == ["ride_match_1_retry_0"]
        assert (await queue.dequeue()).payload == {"attempt": "b"}


class TestRedisQueue:
    """Tests the Redis job queue calls (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_enqueue_writes_payload_and_schedule_atomically(self):
        pipe = MagicMock()
        pipe.__aenter__.return_value = pipe
        pipe.execute = AsyncMock(return_value=[1, 0, 1])
        mock_redis = MagicMock()
        mock_redis.pipeline.return_value = pipe

        queue = RedisMatchJobQueue(mock_redis, clock=lambda: 1000.0)
        await queue.enqueue(_job(5, 1, vehicle_type="car"), delay=20)

        mock_redis.pipeline.assert_called_once_with(transaction=True)
        pipe.hset.assert_called_once_with(
            "ride-matching:payloads", "ride_match_5_retry_1", '{"vehicle_type":"car"}'
        )
        pipe.zadd.assert_called_once_with(
            "ride-matching:ready", {"ride_match_5_retry_1": 1020.0}
        )
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_dequeue_decodes_job(self):
        mock_redis = AsyncMock()
        mock_redis.eval = AsyncMock(
            return_value=["ride_match_5_retry_1", json.dumps({"vehicle_type": "car"})]
        )

        queue = RedisMatchJobQueue(mock_redis, visibility_seconds=30, clock=lambda: 1000.0)
        job = await queue.dequeue()
        assert (job.ride_id, job.retry_count) == (5, 1)
        assert job.payload == {"vehicle_type": "car"}

        args = mock_redis.eval.await_args.args
        assert args[1:] == (
            3,
            "ride-matching:ready",
            "ride-matching:inflight",
            "ride-matching:payloads",
            1000.0,
            30,
        )

    @pytest.mark.asyncio
    async def test_dequeue_drops_malformed_key(self, caplog):
        mock_redis = AsyncMock()
        mock_redis.eval = AsyncMock(
            side_effect=[
                ["ride_match_oops", "{}"],
                1,
                ["ride_match_5_retry_1", json.dumps({"vehicle_type": "car"})],
            ]
        )

        queue = RedisMatchJobQueue(mock_redis, clock=lambda: 1000.0)
        job = await queue.dequeue()
        assert job.key == "ride_match_5_retry_1"

        cancel_call = mock_redis.eval.await_args_list[1]
        assert cancel_call.args[1:] == (
            3,
            "ride-matching:ready",
            "ride-matching:inflight",
            "ride-matching:payloads",
            "ride_match_oops",
        )
        assert "Dropping malformed match job 'ride_match_oops'" in caplog.text

    @pytest.mark.asyncio
    async def test_dequeue_empty(self):
        mock_redis = AsyncMock()
        mock_redis.eval = AsyncMock(return_value=None)
        assert await RedisMatchJobQueue(mock_redis).dequeue() is None

    @pytest.mark.asyncio
    async def test_defer_reports_missing_job(self):
        mock_redis = AsyncMock()
        mock_redis.eval = AsyncMock(return_value=0)
        queue = RedisMatchJobQueue(mock_redis, clock=lambda: 1000.0)
        assert await queue.defer("ride_match_5_retry_1", 3) is False
        assert mock_redis.eval.await_args.args[-2:] == (1003.0, "")

    @pytest.mark.asyncio
    async def test_outage_raises_dependency_failure(self):
        mock_redis = AsyncMock()
        mock_redis.eval = AsyncMock(side_effect=RedisTimeoutError("timed out"))
        with pytest.raises(DependencyFailure, match="Match job queue unavailable"):
            await RedisMatchJobQueue(mock_redis).cancel("ride_match_5_retry_1")


class TestRedisDriverIndex:
    """Tests the Redis GEO calls (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_add_uses_vehicle_partition(self):
        mock_redis = AsyncMock()
        index = RedisDriverIndex(mock_redis)
        await index.add(VehicleType.CAR, 9, Coordinates(106.8, -6.2))
        mock_redis.geoadd.assert_awaited_once_with(
            "drivers:locations:car", [106.8, -6.2, "9"]
        )

    @pytest.mark.asyncio
    async def test_nearby_maps_results(self):
        mock_redis = AsyncMock()
        mock_redis.geosearch = AsyncMock(
            return_value=[["4", 1.25, (106.81, -6.17)], ["9", 3.5, (106.83, -6.2)]]
        )
        index = RedisDriverIndex(mock_redis)

        found = await index.nearby(VehicleType.MOTORCYCLE, Coordinates(106.8, -6.17), 10, 5)
        assert [c.driver_id for c in found] == [4, 9]
        assert found[0].distance_km == 1.25
        assert found[0].position == Coordinates(106.81, -6.17)

        kwargs = mock_redis.geosearch.await_args.kwargs
        assert mock_redis.geosearch.await_args.args == ("drivers:locations:motorcycle",)
        assert kwargs["radius"] == 10
        assert kwargs["unit"] == "km"
        assert kwargs["sort"] == "ASC"
        assert kwargs["count"] == 5
