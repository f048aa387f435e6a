"""
Driver endpoints
================

PUT /api/v1/drivers/{driver_id}/location    -- position update (indexed while available)
GET /api/v1/drivers/{driver_id}/active-ride -- ride the driver is currently on
GET /api/v1/drivers/nearby                  -- available drivers around a point
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ridedispatch.api.dependencies import get_drivers, get_lifecycle
from ridedispatch.api.middleware import limiter
from ridedispatch.api.schemas import (
    ActiveRideResponse,
    ErrorResponse,
    LocationUpdateRequest,
    LocationUpdateResponse,
    NearbyDriverResponse,
    RideResponse,
)
from ridedispatch.config import settings
from ridedispatch.domain.entities import Coordinates
from ridedispatch.domain.enums import VehicleType
from ridedispatch.services.drivers import DriverPresence
from ridedispatch.services.lifecycle import RideLifecycle

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.get(
    "/nearby",
    response_model=list[NearbyDriverResponse],
    summary="Available drivers near a point, nearest first",
)
@limiter.limit(settings.rate_limit)
async def nearby_drivers(
    request: Request,
    longitude: float = Query(..., ge=-180, le=180),
    latitude: float = Query(..., ge=-90, le=90),
    vehicle_type: VehicleType = Query(VehicleType.MOTORCYCLE),
    radius_km: Optional[float] = Query(None, gt=0, le=50),
    limit: Optional[int] = Query(None, ge=1, le=100),
    drivers: DriverPresence = Depends(get_drivers),
):
    point = Coordinates(longitude=longitude, latitude=latitude)
    candidates = await drivers.nearby(vehicle_type, point, radius_km, limit)
    return [NearbyDriverResponse.from_candidate(c) for c in candidates]


@router.put(
    "/{driver_id}/location",
    response_model=LocationUpdateResponse,
    summary="Update a driver's position",
    responses={404: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit)
async def update_location(
    request: Request,
    driver_id: int,
    body: LocationUpdateRequest,
    drivers: DriverPresence = Depends(get_drivers),
):
    coords = Coordinates.from_pair(body.coords)
    indexed = await drivers.update_location(driver_id, coords)
    return LocationUpdateResponse(driver_id=driver_id, indexed=indexed)


@router.get(
    "/{driver_id}/active-ride",
    response_model=ActiveRideResponse,
    summary="The driver's current ride, if any",
)
@limiter.limit(settings.rate_limit)
async def active_ride(
    request: Request,
    driver_id: int,
    lifecycle: RideLifecycle = Depends(get_lifecycle),
):
    ride = await lifecycle.active_ride_for_driver(driver_id)
    return ActiveRideResponse(ride=RideResponse.from_entity(ride) if ride else None)
