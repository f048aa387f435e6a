"""
Admin / observability endpoints
===============================

GET /api/v1/admin/match-queue -- queued / in-flight match jobs, rides per status
GET /api/v1/admin/health      -- simple health check
"""

from fastapi import APIRouter, Depends, Request

from ridedispatch.api.dependencies import get_services
from ridedispatch.api.middleware import limiter
from ridedispatch.api.schemas import HealthResponse, MatchQueueResponse
from ridedispatch.config import settings
from ridedispatch.infrastructure.repositories import DriverRepository, RideRepository
from ridedispatch.services.container import DispatchServices

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/match-queue",
    response_model=MatchQueueResponse,
    summary="Match job queue depth and ride counts",
)
@limiter.limit(settings.rate_limit)
async def match_queue(
    request: Request,
    services: DispatchServices = Depends(get_services),
):
    stats = await services.job_queue.stats()
    async with services.session_factory() as session:
        by_status = await RideRepository(session).count_by_status()
        available = await DriverRepository(session).count_available()
    return MatchQueueResponse(
        ready=stats["ready"],
        inflight=stats["inflight"],
        rides_by_status=by_status,
        available_drivers=available,
    )


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(services: DispatchServices = Depends(get_services)):
    return HealthResponse(backend=services.settings.backend)
