"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``Ride``: ``can_transition_to`` consults
  ``RIDE_TRANSITIONS`` (searching -> requesting_driver -> driver_accepted
  -> driver_arrived -> in_progress -> payment_in_progress -> completed,
  with cancellation / re-matching edges).
- ``MatchAttempt`` is an immutable value object; every change to the retry
  bookkeeping goes through one of its ``with_*`` methods so that
  ``attempted_drivers`` can only grow and ``retry_count`` only increases.
- ``MatchJob`` derives its queue identity from ``(ride_id, retry_count)``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping, Optional

from .enums import DriverAvailability, RideStatus, RIDE_TRANSITIONS, VehicleType
from .errors import ValidationError


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Coordinates:
    longitude: float
    latitude: float

    @classmethod
    def from_pair(cls, pair: Any, field_name: str = "coords") -> Coordinates:
        """Parse a ``[longitude, latitude]`` pair, raising on bad input."""
        if (
            not isinstance(pair, (list, tuple))
            or len(pair) != 2
            or not all(_is_number(v) for v in pair)
        ):
            raise ValidationError(
                f"{field_name} must be an array of [longitude, latitude].",
                code="INVALID_COORDS",
                details={"field": field_name},
            )
        lon, lat = float(pair[0]), float(pair[1])
        if not (-180 <= lon <= 180 and -90 <= lat <= 90):
            raise ValidationError(
                f"{field_name} is out of range.",
                code="INVALID_COORDS",
                details={"field": field_name},
            )
        return cls(longitude=lon, latitude=lat)

    def as_pair(self) -> list[float]:
        return [self.longitude, self.latitude]


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


@dataclass(frozen=True)
class Place:
    coords: Coordinates
    address: str

    def to_dict(self) -> dict[str, Any]:
        return {"coords": self.coords.as_pair(), "address": self.address}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Place:
        return cls(
            coords=Coordinates.from_pair(data.get("coords")),
            address=data.get("address", ""),
        )


@dataclass(frozen=True)
class FareBreakdown:
    """Monetary fields of a ride.  Carried through, never recomputed here."""

    distance_m: float
    duration_s: float
    fare: float
    platform_fee: float
    driver_earning: float
    app_commission: float
    fare_breakdown: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "distance_m": self.distance_m,
            "duration_s": self.duration_s,
            "fare": self.fare,
            "platform_fee": self.platform_fee,
            "driver_earning": self.driver_earning,
            "app_commission": self.app_commission,
            "fare_breakdown": dict(self.fare_breakdown),
        }


# ── Match bookkeeping ─────────────────────────────────────────────────

# Fields only meaningful for one particular offer; dropped before reuse.
OFFER_FIELDS = ("type", "request_expired_at", "distance_to_pickup_km")

_JOB_KEY_RE = re.compile(r"^ride_match_(\d+)_retry_(\d+)$")


def job_key(ride_id: int, retry_count: int) -> str:
    return f"ride_match_{ride_id}_retry_{retry_count}"


def reservation_token(ride_id: int, retry_count: int) -> str:
    """Value stored in a driver's reservation marker for one offer."""
    return f"{ride_id}:{retry_count}"


@dataclass(frozen=True)
class MatchJob:
    ride_id: int
    retry_count: int
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return job_key(self.ride_id, self.retry_count)

    @classmethod
    def from_queue(cls, key: str, payload: Mapping[str, Any]) -> MatchJob:
        match = _JOB_KEY_RE.match(key)
        if not match:
            raise ValueError(f"Malformed match job key: {key}")
        return cls(
            ride_id=int(match.group(1)),
            retry_count=int(match.group(2)),
            payload=dict(payload),
        )

    @property
    def vehicle_type(self) -> VehicleType:
        return VehicleType(self.payload["vehicle_type"])

    @property
    def pickup(self) -> Coordinates:
        return Coordinates.from_pair(self.payload["pickup"]["coords"])

    @property
    def attempted_drivers(self) -> tuple[int, ...]:
        return tuple(self.payload.get("attempted_drivers", ()))

    def with_payload(self, **updates: Any) -> MatchJob:
        return replace(self, payload={**self.payload, **updates})


@dataclass(frozen=True)
class MatchAttempt:
    retry_count: int = 0
    attempted_drivers: tuple[int, ...] = ()
    message_data: dict[str, Any] = field(default_factory=dict)

    def resumable_payload(self) -> dict[str, Any]:
        return {
            k: v for k, v in self.message_data.items() if k not in OFFER_FIELDS
        }

    def with_declined(self, driver_id: int) -> MatchAttempt:
        """Record a rejection / timeout / cancellation and open the next attempt."""
        attempted = self.attempted_drivers
        if driver_id not in attempted:
            attempted = attempted + (driver_id,)
        return MatchAttempt(
            retry_count=self.retry_count + 1,
            attempted_drivers=attempted,
            message_data=self.resumable_payload(),
        )

    def with_offer(self, *, expires_at: datetime, distance_km: float) -> MatchAttempt:
        message_data = self.resumable_payload()
        message_data.update(
            type="NEW_RIDE_REQUEST",
            request_expired_at=expires_at.isoformat(),
            distance_to_pickup_km=round(distance_km, 3),
        )
        return replace(self, message_data=message_data)

    @property
    def offer_expires_at(self) -> Optional[datetime]:
        raw = self.message_data.get("request_expired_at")
        return datetime.fromisoformat(raw) if raw else None

    def job_for(self, ride_id: int, **extra: Any) -> MatchJob:
        payload = self.resumable_payload()
        payload["attempted_drivers"] = list(self.attempted_drivers)
        payload.update(extra)
        return MatchJob(ride_id=ride_id, retry_count=self.retry_count, payload=payload)


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Ride:
    id: Optional[int] = None
    rider_id: int = 0
    driver_id: Optional[int] = None
    status: RideStatus = RideStatus.SEARCHING
    vehicle_type: VehicleType = VehicleType.MOTORCYCLE
    service_variant: str = "standard"
    fare: Optional[FareBreakdown] = None
    planned_pickup: Optional[Place] = None
    planned_dropoff: Optional[Place] = None
    actual_pickup: Optional[Coordinates] = None
    actual_dropoff: Optional[Coordinates] = None
    match_attempt: MatchAttempt = field(default_factory=MatchAttempt)
    status_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def can_transition_to(self, new_status: RideStatus) -> bool:
        return new_status in RIDE_TRANSITIONS.get(self.status, set())


@dataclass
class Driver:
    id: Optional[int] = None
    name: str = ""
    vehicle_type: VehicleType = VehicleType.MOTORCYCLE
    availability_status: DriverAvailability = DriverAvailability.AVAILABLE
    decline_count: int = 0
    missed_requests: int = 0

    @property
    def is_available(self) -> bool:
        return self.availability_status == DriverAvailability.AVAILABLE


@dataclass
class Rider:
    id: Optional[int] = None
    name: str = ""


# ── Ride creation input ───────────────────────────────────────────────

REQUIRED_RIDE_FIELDS = (
    "distance_m",
    "duration_s",
    "vehicle_type",
    "service_variant",
    "fare",
    "platform_fee",
    "driver_earning",
    "app_commission",
    "fare_breakdown",
    "planned_pickup_coords",
    "planned_pickup_address",
    "planned_dropoff_coords",
    "planned_dropoff_address",
)


@dataclass(frozen=True)
class RideDraft:
    """Validated input for ride creation."""

    rider_id: int
    vehicle_type: VehicleType
    service_variant: str
    fare: FareBreakdown
    pickup: Place
    dropoff: Place

    @classmethod
    def from_fields(cls, rider_id: int, data: Mapping[str, Any]) -> RideDraft:
        missing = [f for f in REQUIRED_RIDE_FIELDS if data.get(f) is None]
        if missing:
            raise ValidationError(
                ", ".join(missing),
                code="MISSING_FIELDS",
                details={"missing": missing},
            )

        try:
            vehicle_type = VehicleType(data["vehicle_type"])
        except ValueError:
            raise ValidationError(
                f"Unknown vehicle_type: {data['vehicle_type']}",
                code="INVALID_VEHICLE_TYPE",
                details={"field": "vehicle_type"},
            ) from None

        try:
            fare = FareBreakdown(
                distance_m=float(data["distance_m"]),
                duration_s=float(data["duration_s"]),
                fare=float(data["fare"]),
                platform_fee=float(data["platform_fee"]),
                driver_earning=float(data["driver_earning"]),
                app_commission=float(data["app_commission"]),
                fare_breakdown=dict(data["fare_breakdown"]),
            )
        except (TypeError, ValueError):
            raise ValidationError(
                "Fare fields must be numeric and fare_breakdown an object.",
                code="INVALID_FARE",
            ) from None

        return cls(
            rider_id=rider_id,
            vehicle_type=vehicle_type,
            service_variant=str(data["service_variant"]),
            fare=fare,
            pickup=Place(
                coords=Coordinates.from_pair(
                    data["planned_pickup_coords"], "planned_pickup_coords"
                ),
                address=str(data["planned_pickup_address"]),
            ),
            dropoff=Place(
                coords=Coordinates.from_pair(
                    data["planned_dropoff_coords"], "planned_dropoff_coords"
                ),
                address=str(data["planned_dropoff_address"]),
            ),
        )

    def message_data(self) -> dict[str, Any]:
        """Resumable matching payload stored on the ride and in its jobs."""
        return {
            "vehicle_type": self.vehicle_type.value,
            "service_variant": self.service_variant,
            **self.fare.to_dict(),
            "pickup": self.pickup.to_dict(),
            "dropoff": self.dropoff.to_dict(),
        }
