"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ridedispatch.domain.entities import Ride
from ridedispatch.domain.matching import Candidate


# ── Requests ──────────────────────────────────────────────────────────


class RideCreateRequest(BaseModel):
    """
    Trip and fare fields are optional at this layer so that missing or
    malformed values are reported with the domain's own error codes
    (``MISSING_FIELDS``, ``INVALID_COORDS``, ...).
    """

    rider_id: int
    distance_m: Optional[float] = None
    duration_s: Optional[float] = None
    vehicle_type: Optional[str] = None
    service_variant: Optional[str] = None
    fare: Optional[float] = None
    platform_fee: Optional[float] = None
    driver_earning: Optional[float] = None
    app_commission: Optional[float] = None
    fare_breakdown: Optional[dict[str, Any]] = None
    planned_pickup_coords: Any = Field(None, description="[longitude, latitude]")
    planned_pickup_address: Optional[str] = None
    planned_dropoff_coords: Any = Field(None, description="[longitude, latitude]")
    planned_dropoff_address: Optional[str] = None

    def ride_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude={"rider_id"})


class DriverActionRequest(BaseModel):
    driver_id: int


class DriverPositionRequest(BaseModel):
    driver_id: int
    coords: Any = Field(..., description="[longitude, latitude]")


class LocationUpdateRequest(BaseModel):
    coords: Any = Field(..., description="[longitude, latitude]")


class RiderCancelRequest(BaseModel):
    rider_id: int
    reason: Optional[str] = Field(None, max_length=500)


class DriverCancelRequest(BaseModel):
    driver_id: int
    reason: Optional[str] = Field(None, max_length=500)


# ── Responses ─────────────────────────────────────────────────────────


class PlaceResponse(BaseModel):
    coords: list[float]
    address: str


class RideResponse(BaseModel):
    id: int
    rider_id: int
    driver_id: Optional[int] = None
    status: str
    vehicle_type: str
    service_variant: str
    distance_m: float
    duration_s: float
    fare: float
    platform_fee: float
    driver_earning: float
    app_commission: float
    fare_breakdown: dict[str, Any] = {}
    planned_pickup: PlaceResponse
    planned_dropoff: PlaceResponse
    actual_pickup: Optional[list[float]] = None
    actual_dropoff: Optional[list[float]] = None
    retry_count: int
    attempted_drivers: list[int] = []
    status_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, ride: Ride) -> RideResponse:
        return cls(
            id=ride.id,
            rider_id=ride.rider_id,
            driver_id=ride.driver_id,
            status=ride.status.value,
            vehicle_type=ride.vehicle_type.value,
            service_variant=ride.service_variant,
            **ride.fare.to_dict(),
            planned_pickup=PlaceResponse(**ride.planned_pickup.to_dict()),
            planned_dropoff=PlaceResponse(**ride.planned_dropoff.to_dict()),
            actual_pickup=ride.actual_pickup.as_pair() if ride.actual_pickup else None,
            actual_dropoff=ride.actual_dropoff.as_pair() if ride.actual_dropoff else None,
            retry_count=ride.match_attempt.retry_count,
            attempted_drivers=list(ride.match_attempt.attempted_drivers),
            status_reason=ride.status_reason,
            started_at=ride.started_at,
            ended_at=ride.ended_at,
            created_at=ride.created_at,
        )


class ActiveRideResponse(BaseModel):
    ride: Optional[RideResponse] = None


class NearbyDriverResponse(BaseModel):
    driver_id: int
    distance_km: float
    coords: list[float]

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> NearbyDriverResponse:
        return cls(
            driver_id=candidate.driver_id,
            distance_km=round(candidate.distance_km, 3),
            coords=candidate.position.as_pair(),
        )


class LocationUpdateResponse(BaseModel):
    driver_id: int
    indexed: bool


class MatchQueueResponse(BaseModel):
    ready: int
    inflight: int
    rides_by_status: dict[str, int] = {}
    available_drivers: int = 0


class HealthResponse(BaseModel):
    status: str = "ok"
    backend: str = "redis"


class ErrorResponse(BaseModel):
    status: int
    error: str
    message: str
    code: str
    details: Optional[dict[str, Any]] = None
