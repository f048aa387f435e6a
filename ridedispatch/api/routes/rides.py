"""
Ride endpoints
==============

POST /api/v1/rides                           -- request a ride (201; matching is async)
GET  /api/v1/rides/{ride_id}                 -- current state of a ride
POST /api/v1/rides/{ride_id}/confirm         -- offered driver accepts
POST /api/v1/rides/{ride_id}/reject          -- offered driver declines
POST /api/v1/rides/{ride_id}/arrive          -- driver reached the pickup
POST /api/v1/rides/{ride_id}/pickup          -- rider on board
POST /api/v1/rides/{ride_id}/dropoff         -- rider dropped off
POST /api/v1/rides/{ride_id}/payment         -- driver received payment
POST /api/v1/rides/{ride_id}/cancel-by-rider
POST /api/v1/rides/{ride_id}/cancel-by-driver

Each action maps 1:1 onto a ``RideLifecycle`` transition; a transition
from the wrong status answers 409 with code ``INVALID_STATUS``.
"""

from fastapi import APIRouter, Depends, Request

from ridedispatch.api.dependencies import get_lifecycle
from ridedispatch.api.middleware import limiter
from ridedispatch.api.schemas import (
    DriverActionRequest,
    DriverCancelRequest,
    DriverPositionRequest,
    ErrorResponse,
    RideCreateRequest,
    RideResponse,
    RiderCancelRequest,
)
from ridedispatch.config import settings
from ridedispatch.domain.entities import Coordinates
from ridedispatch.services.lifecycle import RideLifecycle

router = APIRouter(prefix="/rides", tags=["rides"])

_CONFLICT = {409: {"model": ErrorResponse}, 404: {"model": ErrorResponse}}


@router.post(
    "",
    status_code=201,
    response_model=RideResponse,
    summary="Request a ride",
    responses={
        400: {"model": ErrorResponse, "description": "Invalid input or no drivers nearby"},
        409: {"model": ErrorResponse, "description": "Rider already has an active ride"},
    },
)
@limiter.limit(settings.rate_limit)
async def create_ride(
    request: Request,
    body: RideCreateRequest,
    lifecycle: RideLifecycle = Depends(get_lifecycle),
):
    ride = await lifecycle.create_ride(body.rider_id, body.ride_fields())
    return RideResponse.from_entity(ride)


@router.get(
    "/{ride_id}",
    response_model=RideResponse,
    summary="Get ride status",
    responses={404: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit)
async def get_ride(
    request: Request,
    ride_id: int,
    lifecycle: RideLifecycle = Depends(get_lifecycle),
):
    return RideResponse.from_entity(await lifecycle.get_ride(ride_id))


@router.post(
    "/{ride_id}/confirm",
    response_model=RideResponse,
    summary="Driver accepts the offered ride",
    responses=_CONFLICT,
)
@limiter.limit(settings.rate_limit)
async def confirm_ride(
    request: Request,
    ride_id: int,
    body: DriverActionRequest,
    lifecycle: RideLifecycle = Depends(get_lifecycle),
):
    return RideResponse.from_entity(await lifecycle.confirm(ride_id, body.driver_id))


@router.post(
    "/{ride_id}/reject",
    response_model=RideResponse,
    summary="Driver declines the offered ride",
    description="The ride goes back to matching, excluding this driver.",
    responses=_CONFLICT,
)
@limiter.limit(settings.rate_limit)
async def reject_ride(
    request: Request,
    ride_id: int,
    body: DriverActionRequest,
    lifecycle: RideLifecycle = Depends(get_lifecycle),
):
    return RideResponse.from_entity(await lifecycle.reject(ride_id, body.driver_id))


@router.post(
    "/{ride_id}/arrive",
    response_model=RideResponse,
    summary="Driver arrived at the pickup point",
    responses=_CONFLICT,
)
@limiter.limit(settings.rate_limit)
async def mark_arrived(
    request: Request,
    ride_id: int,
    body: DriverActionRequest,
    lifecycle: RideLifecycle = Depends(get_lifecycle),
):
    return RideResponse.from_entity(
        await lifecycle.mark_arrived(ride_id, body.driver_id)
    )


@router.post(
    "/{ride_id}/pickup",
    response_model=RideResponse,
    summary="Driver picked up the rider",
    responses=_CONFLICT,
)
@limiter.limit(settings.rate_limit)
async def confirm_pickup(
    request: Request,
    ride_id: int,
    body: DriverPositionRequest,
    lifecycle: RideLifecycle = Depends(get_lifecycle),
):
    coords = Coordinates.from_pair(body.coords)
    return RideResponse.from_entity(
        await lifecycle.confirm_pickup(ride_id, body.driver_id, coords)
    )


@router.post(
    "/{ride_id}/dropoff",
    response_model=RideResponse,
    summary="Driver dropped off the rider",
    responses=_CONFLICT,
)
@limiter.limit(settings.rate_limit)
async def confirm_dropoff(
    request: Request,
    ride_id: int,
    body: DriverPositionRequest,
    lifecycle: RideLifecycle = Depends(get_lifecycle),
):
    coords = Coordinates.from_pair(body.coords)
    return RideResponse.from_entity(
        await lifecycle.confirm_dropoff(ride_id, body.driver_id, coords)
    )


@router.post(
    "/{ride_id}/payment",
    response_model=RideResponse,
    summary="Driver confirms payment received",
    responses=_CONFLICT,
)
@limiter.limit(settings.rate_limit)
async def confirm_payment(
    request: Request,
    ride_id: int,
    body: DriverActionRequest,
    lifecycle: RideLifecycle = Depends(get_lifecycle),
):
    return RideResponse.from_entity(
        await lifecycle.confirm_payment(ride_id, body.driver_id)
    )


@router.post(
    "/{ride_id}/cancel-by-rider",
    response_model=RideResponse,
    summary="Rider cancels before pickup",
    description="Allowed while the ride is still searching or awaiting a driver.",
    responses=_CONFLICT,
)
@limiter.limit(settings.rate_limit)
async def cancel_by_rider(
    request: Request,
    ride_id: int,
    body: RiderCancelRequest,
    lifecycle: RideLifecycle = Depends(get_lifecycle),
):
    return RideResponse.from_entity(
        await lifecycle.cancel_by_rider(ride_id, body.rider_id, body.reason)
    )


@router.post(
    "/{ride_id}/cancel-by-driver",
    response_model=RideResponse,
    summary="Assigned driver drops the ride",
    description=(
        "The ride is re-matched if another driver is in range, "
        "otherwise it is cancelled."
    ),
    responses=_CONFLICT,
)
@limiter.limit(settings.rate_limit)
async def cancel_by_driver(
    request: Request,
    ride_id: int,
    body: DriverCancelRequest,
    lifecycle: RideLifecycle = Depends(get_lifecycle),
):
    return RideResponse.from_entity(
        await lifecycle.cancel_by_driver(ride_id, body.driver_id, body.reason)
    )
