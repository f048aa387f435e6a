"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Rows are returned as domain entities, never
as ORM instances, so callers work on a snapshot of the row.

``RideRepository.update_if_status`` is the compare-and-swap every status
change goes through: ``UPDATE rides ... WHERE id = :id AND status IN (...)``
plus optional guards on the assigned driver, the rider and the current
``retry_count``.  Zero affected rows means somebody else already moved the
ride, and ``Conflict`` (or ``NotFound``) is raised without touching anything.
"""

from __future__ import annotations

import functools
from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import DriverModel, RideModel, RiderModel
from ridedispatch.domain.entities import (
    Coordinates,
    Driver,
    FareBreakdown,
    MatchAttempt,
    Place,
    Ride,
    RideDraft,
    Rider,
)
from ridedispatch.domain.enums import (
    ACTIVE_STATUSES,
    RIDE_TRANSITIONS,
    DriverAvailability,
    RideStatus,
    VehicleType,
)
from ridedispatch.domain.errors import Conflict, DependencyFailure, NotFound


def _store_call(fn):
    """Translate driver / connection errors into ``DependencyFailure``."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            raise DependencyFailure(
                f"Ride store unavailable: {exc.__class__.__name__}"
            ) from exc

    return wrapper


async def commit(session: AsyncSession) -> None:
    """Commit the unit of work, mapping store errors onto the taxonomy."""
    try:
        await session.commit()
    except IntegrityError as exc:
        raise Conflict(
            "Rider currently has an active ride.", code="ACTIVE_RIDE_EXISTS"
        ) from exc
    except SQLAlchemyError as exc:
        raise DependencyFailure(
            f"Ride store unavailable: {exc.__class__.__name__}"
        ) from exc


# ── Row <-> entity mapping ────────────────────────────────────────────


def _point(lng: Optional[float], lat: Optional[float]) -> Optional[Coordinates]:
    if lng is None or lat is None:
        return None
    return Coordinates(longitude=lng, latitude=lat)


def to_ride(row: RideModel) -> Ride:
    return Ride(
        id=row.id,
        rider_id=row.rider_id,
        driver_id=row.driver_id,
        status=RideStatus(row.status),
        vehicle_type=VehicleType(row.vehicle_type),
        service_variant=row.service_variant,
        fare=FareBreakdown(
            distance_m=row.distance_m,
            duration_s=row.duration_s,
            fare=row.fare,
            platform_fee=row.platform_fee,
            driver_earning=row.driver_earning,
            app_commission=row.app_commission,
            fare_breakdown=dict(row.fare_breakdown or {}),
        ),
        planned_pickup=Place(
            coords=Coordinates(row.planned_pickup_lng, row.planned_pickup_lat),
            address=row.planned_pickup_address,
        ),
        planned_dropoff=Place(
            coords=Coordinates(row.planned_dropoff_lng, row.planned_dropoff_lat),
            address=row.planned_dropoff_address,
        ),
        actual_pickup=_point(row.actual_pickup_lng, row.actual_pickup_lat),
        actual_dropoff=_point(row.actual_dropoff_lng, row.actual_dropoff_lat),
        match_attempt=MatchAttempt(
            retry_count=row.retry_count,
            attempted_drivers=tuple(row.attempted_drivers or ()),
            message_data=dict(row.message_data or {}),
        ),
        status_reason=row.status_reason,
        started_at=row.started_at,
        ended_at=row.ended_at,
        created_at=row.created_at,
    )


def to_driver(row: DriverModel) -> Driver:
    return Driver(
        id=row.id,
        name=row.name,
        vehicle_type=VehicleType(row.vehicle_type),
        availability_status=DriverAvailability(row.availability_status),
        decline_count=row.decline_count,
        missed_requests=row.missed_requests,
    )


def attempt_values(attempt: MatchAttempt) -> dict[str, Any]:
    return {
        "retry_count": attempt.retry_count,
        "attempted_drivers": list(attempt.attempted_drivers),
        "message_data": dict(attempt.message_data),
    }


def point_values(prefix: str, point: Coordinates) -> dict[str, float]:
    return {f"{prefix}_lng": point.longitude, f"{prefix}_lat": point.latitude}


# ── Repositories ──────────────────────────────────────────────────────


class RideRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    @_store_call
    async def insert(self, draft: RideDraft) -> Ride:
        """Insert a ``searching`` ride and return it with its new id."""
        ride = RideModel(
            rider_id=draft.rider_id,
            driver_id=None,
            status=RideStatus.SEARCHING,
            vehicle_type=draft.vehicle_type,
            service_variant=draft.service_variant,
            distance_m=draft.fare.distance_m,
            duration_s=draft.fare.duration_s,
            fare=draft.fare.fare,
            platform_fee=draft.fare.platform_fee,
            driver_earning=draft.fare.driver_earning,
            app_commission=draft.fare.app_commission,
            fare_breakdown=dict(draft.fare.fare_breakdown),
            planned_pickup_lng=draft.pickup.coords.longitude,
            planned_pickup_lat=draft.pickup.coords.latitude,
            planned_pickup_address=draft.pickup.address,
            planned_dropoff_lng=draft.dropoff.coords.longitude,
            planned_dropoff_lat=draft.dropoff.coords.latitude,
            planned_dropoff_address=draft.dropoff.address,
            retry_count=0,
            attempted_drivers=[],
            message_data=draft.message_data(),
        )
        self.session.add(ride)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise Conflict(
                "Rider currently has an active ride.", code="ACTIVE_RIDE_EXISTS"
            ) from exc
        await self.session.refresh(ride)
        return to_ride(ride)

    @_store_call
    async def get(self, ride_id: int) -> Optional[Ride]:
        row = await self.session.get(RideModel, ride_id, populate_existing=True)
        return to_ride(row) if row else None

    @_store_call
    async def get_active_for_rider(self, rider_id: int) -> Optional[Ride]:
        result = await self.session.execute(
            select(RideModel)
            .where(
                RideModel.rider_id == rider_id,
                RideModel.status.in_(list(ACTIVE_STATUSES)),
            )
            .order_by(RideModel.created_at.desc())
        )
        row = result.scalars().first()
        return to_ride(row) if row else None

    @_store_call
    async def get_active_for_driver(self, driver_id: int) -> Optional[Ride]:
        result = await self.session.execute(
            select(RideModel)
            .where(
                RideModel.driver_id == driver_id,
                RideModel.status.in_(list(ACTIVE_STATUSES)),
            )
            .order_by(RideModel.created_at.desc())
        )
        row = result.scalars().first()
        return to_ride(row) if row else None

    @_store_call
    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(RideModel.status, func.count()).group_by(RideModel.status)
        )
        return {RideStatus(status).value: count for status, count in result.all()}

    @_store_call
    async def update_if_status(
        self,
        ride_id: int,
        expected: Iterable[RideStatus],
        values: dict[str, Any],
        *,
        driver_id: Optional[int] = None,
        rider_id: Optional[int] = None,
        retry_count: Optional[int] = None,
        unassigned: bool = False,
    ) -> Ride:
        """
        Conditionally apply *values* to the ride.

        Raises ``NotFound`` if the ride does not exist and ``Conflict`` if
        it exists but any guard does not hold.
        """
        expected = frozenset(expected)
        target = values.get("status")
        if target is not None:
            for source in expected:
                if target not in RIDE_TRANSITIONS[source]:
                    raise ValueError(
                        f"Illegal transition {source.value} -> {RideStatus(target).value}"
                    )

        stmt = update(RideModel).where(
            RideModel.id == ride_id, RideModel.status.in_(list(expected))
        )
        if driver_id is not None:
            stmt = stmt.where(RideModel.driver_id == driver_id)
        if rider_id is not None:
            stmt = stmt.where(RideModel.rider_id == rider_id)
        if retry_count is not None:
            stmt = stmt.where(RideModel.retry_count == retry_count)
        if unassigned:
            stmt = stmt.where(RideModel.driver_id.is_(None))

        result = await self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise await self._conflict(ride_id, expected, driver_id, rider_id)

        row = await self.session.get(RideModel, ride_id, populate_existing=True)
        return to_ride(row)

    async def _conflict(
        self,
        ride_id: int,
        expected: frozenset[RideStatus],
        driver_id: Optional[int],
        rider_id: Optional[int],
    ) -> Exception:
        current = await self.get(ride_id)
        if current is None:
            return NotFound("Ride not found.", code="RIDE_NOT_FOUND")
        if current.status not in expected:
            wanted = ", ".join(sorted(s.value for s in expected))
            return Conflict(
                f"Ride is '{current.status.value}', expected one of: {wanted}.",
                code="INVALID_STATUS",
                details={"status": current.status.value},
            )
        if driver_id is not None and current.driver_id != driver_id:
            return Conflict(
                "This ride is not assigned to the given driver.",
                code="UNAUTHORIZED_DRIVER",
            )
        if rider_id is not None and current.rider_id != rider_id:
            return Conflict(
                "This ride does not belong to the given rider.",
                code="UNAUTHORIZED_RIDER",
            )
        return Conflict(
            "Ride was modified concurrently; refetch and retry.",
            code="STALE_RIDE",
            details={"retry_count": current.match_attempt.retry_count},
        )


class DriverRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    @_store_call
    async def create(
        self, *, name: str, vehicle_type: VehicleType = VehicleType.MOTORCYCLE
    ) -> Driver:
        driver = DriverModel(
            name=name,
            vehicle_type=vehicle_type,
            availability_status=DriverAvailability.AVAILABLE,
            decline_count=0,
            missed_requests=0,
        )
        self.session.add(driver)
        await self.session.flush()
        return to_driver(driver)

    @_store_call
    async def get(self, driver_id: int) -> Optional[Driver]:
        row = await self.session.get(DriverModel, driver_id, populate_existing=True)
        return to_driver(row) if row else None

    @_store_call
    async def set_availability(self, driver_id: int, status: DriverAvailability) -> None:
        await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .values(availability_status=status)
            .execution_options(synchronize_session=False)
        )

    @_store_call
    async def claim(self, driver_id: int, status: DriverAvailability) -> None:
        """
        Move an ``available`` driver to *status* and reset their counters.

        Raises ``Conflict`` when the driver is already committed elsewhere,
        which rolls back the caller's ride transition with it.
        """
        result = await self.session.execute(
            update(DriverModel)
            .where(
                DriverModel.id == driver_id,
                DriverModel.availability_status == DriverAvailability.AVAILABLE,
            )
            .values(availability_status=status, decline_count=0, missed_requests=0)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict(
                "Driver is already assigned to another ride.",
                code="DRIVER_UNAVAILABLE",
                details={"driver_id": driver_id},
            )

    @_store_call
    async def record_decline(self, driver_id: int, *, missed: bool = False) -> None:
        values: dict[str, Any] = {"decline_count": DriverModel.decline_count + 1}
        if missed:
            values["missed_requests"] = DriverModel.missed_requests + 1
        await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    @_store_call
    async def count_available(self) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(DriverModel)
            .where(DriverModel.availability_status == DriverAvailability.AVAILABLE)
        )
        return result.scalar() or 0


class RiderRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    @_store_call
    async def create(self, *, name: str) -> Rider:
        rider = RiderModel(name=name)
        self.session.add(rider)
        await self.session.flush()
        return Rider(id=rider.id, name=rider.name)

    @_store_call
    async def get(self, rider_id: int) -> Optional[Rider]:
        row = await self.session.get(RiderModel, rider_id)
        return Rider(id=row.id, name=row.name) if row else None
