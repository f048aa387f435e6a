"""
SQLAlchemy ORM models  (maps to PostgreSQL).

Tables
------
* ``riders``   -- passengers requesting rides
* ``drivers``  -- drivers with availability and decline counters
* ``rides``    -- ride records, including the embedded match attempt
                  (``retry_count``, ``attempted_drivers``, ``message_data``)

Driver positions are *not* stored here; they live in the geospatial
driver index (Redis GEO sets keyed by vehicle type).

Indexes
-------
* **Partial unique** on ``rides.rider_id`` where the status is not terminal:
  the store itself refuses a second active ride for the same rider.
* **B-Tree** on ``status``, ``rider_id``, ``driver_id`` for the look-ups used
  by the lifecycle controller and the API.
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)

from .database import Base
from ridedispatch.domain.enums import DriverAvailability, RideStatus, VehicleType


def _values(enum_cls):
    return [member.value for member in enum_cls]


ACTIVE_RIDE_PREDICATE = text("status NOT IN ('completed', 'cancelled')")


class RiderModel(Base):
    __tablename__ = "riders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class DriverModel(Base):
    __tablename__ = "drivers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    vehicle_type = Column(
        Enum(VehicleType, name="vehicletype", values_callable=_values),
        default=VehicleType.MOTORCYCLE,
        nullable=False,
    )
    availability_status = Column(
        Enum(DriverAvailability, name="driveravailability", values_callable=_values),
        default=DriverAvailability.AVAILABLE,
        nullable=False,
    )
    decline_count = Column(Integer, default=0, nullable=False)
    missed_requests = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_drivers_availability", "availability_status"),
    )


class RideModel(Base):
    __tablename__ = "rides"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rider_id = Column(Integer, ForeignKey("riders.id"), nullable=False)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=True)

    status = Column(
        Enum(RideStatus, name="ridestatus", values_callable=_values),
        default=RideStatus.SEARCHING,
        nullable=False,
    )
    vehicle_type = Column(
        Enum(VehicleType, name="vehicletype", values_callable=_values),
        nullable=False,
    )
    service_variant = Column(String(40), nullable=False)

    # Opaque monetary breakdown, computed upstream
    distance_m = Column(Float, nullable=False)
    duration_s = Column(Float, nullable=False)
    fare = Column(Float, nullable=False)
    platform_fee = Column(Float, nullable=False)
    driver_earning = Column(Float, nullable=False)
    app_commission = Column(Float, nullable=False)
    fare_breakdown = Column(JSON, nullable=False, default=dict)

    planned_pickup_lng = Column(Float, nullable=False)
    planned_pickup_lat = Column(Float, nullable=False)
    planned_pickup_address = Column(String(255), nullable=False)
    planned_dropoff_lng = Column(Float, nullable=False)
    planned_dropoff_lat = Column(Float, nullable=False)
    planned_dropoff_address = Column(String(255), nullable=False)

    actual_pickup_lng = Column(Float, nullable=True)
    actual_pickup_lat = Column(Float, nullable=True)
    actual_dropoff_lng = Column(Float, nullable=True)
    actual_dropoff_lat = Column(Float, nullable=True)

    # Match attempt, split so conditional updates can guard on retry_count
    retry_count = Column(Integer, default=0, nullable=False)
    attempted_drivers = Column(JSON, nullable=False, default=list)
    message_data = Column(JSON, nullable=False, default=dict)

    status_reason = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_rides_status", "status"),
        Index("idx_rides_rider", "rider_id"),
        Index("idx_rides_driver", "driver_id"),
        Index(
            "uq_rides_rider_active",
            "rider_id",
            unique=True,
            postgresql_where=ACTIVE_RIDE_PREDICATE,
            sqlite_where=ACTIVE_RIDE_PREDICATE,
        ),
    )
