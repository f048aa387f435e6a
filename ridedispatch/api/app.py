"""
FastAPI application factory.

* Registers routes for rides, drivers, riders and admin.
* Builds the dispatch services and starts / stops the matching worker via
  lifespan events (unless services are injected, as the tests do).
* Renders every engine error as ``{status, error, message, code, details}``.
* Applies rate limiting.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from ridedispatch.api.middleware import limiter
from ridedispatch.api.routes import admin, drivers, riders, rides
from ridedispatch.config import settings
from ridedispatch.domain.errors import DispatchError, ValidationError
from ridedispatch.services.container import DispatchServices, build_services
from ridedispatch.workers.matcher import MatchWorker

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services and start the matching worker; tear down on shutdown."""
    owned = app.state.services is None
    if owned:
        app.state.services = await build_services(settings)

    worker: Optional[MatchWorker] = None
    if app.state.start_worker:
        worker = MatchWorker(app.state.services.dispatcher, app.state.services.settings)
        await worker.start()

    yield

    if worker is not None:
        await worker.stop()
    if owned:
        await app.state.services.close()


# ── Error rendering ───────────────────────────────────────────────────


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    fields = sorted(
        {".".join(str(p) for p in err["loc"][1:]) or str(err["loc"][0]) for err in exc.errors()}
    )
    error = ValidationError(
        f"Missing or invalid fields: {', '.join(fields)}.",
        code="MISSING_FIELDS",
        details={"fields": fields},
    )
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def create_app(
    services: Optional[DispatchServices] = None,
    *,
    start_worker: Optional[bool] = None,
) -> FastAPI:
    app = FastAPI(
        title="Ride Dispatch API",
        description=(
            "Ride lifecycle and driver matching: nearest-driver offers with "
            "retry on rejection or timeout, per-driver reservations, and "
            "guarded state transitions safe under concurrent requests."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.start_worker = (
        settings.run_matcher_in_app if start_worker is None else start_worker
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Errors
    app.add_exception_handler(DispatchError, dispatch_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Routers
    app.include_router(rides.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(riders.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
