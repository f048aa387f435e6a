"""
Shared test fixtures.

Uses a file-backed SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  Every transaction starts with
``BEGIN IMMEDIATE``, which serialises writers the way row locks would on
PostgreSQL, so the concurrency tests exercise real conditional updates.

Driver index, reservations, job queue and notifications use the in-memory
adapters, all driven by a ``FakeClock``.
"""

from __future__ import annotations

from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ridedispatch.config import Settings
from ridedispatch.domain.entities import Coordinates, Driver, Rider
from ridedispatch.domain.enums import VehicleType
from ridedispatch.infrastructure.database import Base, make_session_factory
from ridedispatch.infrastructure.memory import RecordingNotifier
from ridedispatch.infrastructure.repositories import DriverRepository, RiderRepository
from ridedispatch.services.container import DispatchServices, build_services

# Monas, central Jakarta
PICKUP = Coordinates(longitude=106.827, latitude=-6.175)
DROPOFF = Coordinates(longitude=106.8456, latitude=-6.2088)

KM_PER_DEGREE_LAT = 6_371.0 * 3.141592653589793 / 180


def north_of(point: Coordinates, km: float) -> Coordinates:
    """A point *km* due north of *point* (great-circle exact)."""
    return Coordinates(point.longitude, point.latitude + km / KM_PER_DEGREE_LAT)


def south_of(point: Coordinates, km: float) -> Coordinates:
    return Coordinates(point.longitude, point.latitude - km / KM_PER_DEGREE_LAT)


def ride_fields(**overrides: Any) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "distance_m": 4_200,
        "duration_s": 900,
        "vehicle_type": "motorcycle",
        "service_variant": "standard",
        "fare": 18_000,
        "platform_fee": 2_000,
        "driver_earning": 14_400,
        "app_commission": 3_600,
        "fare_breakdown": {"base": 10_000, "per_km": 8_000},
        "planned_pickup_coords": PICKUP.as_pair(),
        "planned_pickup_address": "Monumen Nasional, Gambir",
        "planned_dropoff_coords": DROPOFF.as_pair(),
        "planned_dropoff_address": "Bundaran HI, Menteng",
    }
    fields.update(overrides)
    return fields


class FakeClock:
    def __init__(self, start: float = 1_760_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        backend="memory",
        matching_radius_km=10.0,
        matching_max_candidates=10,
        offer_timeout_seconds=20,
        reservation_grace_seconds=10,
        contention_retry_delay_seconds=3.0,
        max_contention_retries=2,
        dependency_retry_attempts=2,
        dependency_retry_backoff_seconds=0.0,
        worker_poll_interval_seconds=0.01,
        run_matcher_in_app=False,
        rate_limit_enabled=False,
    )


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite file per test with the production schema."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")

    @event.listens_for(eng.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def recorder() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def services(
    test_settings, session_factory, recorder, clock
) -> AsyncGenerator[DispatchServices, None]:
    svc = await build_services(
        test_settings,
        session_factory=session_factory,
        sinks=[recorder],
        clock=clock,
    )
    yield svc
    await svc.close()


@pytest_asyncio.fixture
async def make_rider(session_factory):
    async def _make(name: str = "Budi Santoso") -> Rider:
        async with session_factory() as session:
            rider = await RiderRepository(session).create(name=name)
            await session.commit()
        return rider

    return _make


@pytest_asyncio.fixture
async def make_driver(session_factory, services):
    """Create a driver and (optionally) put them into the index."""

    async def _make(
        name: str = "Andi Saputra",
        *,
        at: Coordinates | None = None,
        vehicle_type: VehicleType = VehicleType.MOTORCYCLE,
    ) -> Driver:
        async with session_factory() as session:
            driver = await DriverRepository(session).create(
                name=name, vehicle_type=vehicle_type
            )
            await session.commit()
        if at is not None:
            await services.drivers.update_location(driver.id, at)
        return driver

    return _make


@pytest_asyncio.fixture
async def rider(make_rider) -> Rider:
    return await make_rider()


@pytest_asyncio.fixture
async def two_drivers(make_driver) -> tuple[Driver, Driver]:
    """Driver A 2 km north of the pickup, driver B 5 km south."""
    near = await make_driver("Driver A", at=north_of(PICKUP, 2.0))
    far = await make_driver("Driver B", at=south_of(PICKUP, 5.0))
    return near, far


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient over the app, wired to the test services."""
    from ridedispatch.api.app import create_app
    from ridedispatch.api.middleware import limiter

    limiter.enabled = False
    app = create_app(services, start_worker=False)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
