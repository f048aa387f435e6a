"""
Rider endpoints
===============

GET /api/v1/riders/{rider_id}/active-ride -- the rider's non-terminal ride, if any
"""

from fastapi import APIRouter, Depends, Request

from ridedispatch.api.dependencies import get_lifecycle
from ridedispatch.api.middleware import limiter
from ridedispatch.api.schemas import ActiveRideResponse, RideResponse
from ridedispatch.config import settings
from ridedispatch.services.lifecycle import RideLifecycle

router = APIRouter(prefix="/riders", tags=["riders"])


@router.get(
    "/{rider_id}/active-ride",
    response_model=ActiveRideResponse,
    summary="The rider's current ride, if any",
)
@limiter.limit(settings.rate_limit)
async def active_ride(
    request: Request,
    rider_id: int,
    lifecycle: RideLifecycle = Depends(get_lifecycle),
):
    ride = await lifecycle.active_ride_for_rider(rider_id)
    return ActiveRideResponse(ride=RideResponse.from_entity(ride) if ride else None)
