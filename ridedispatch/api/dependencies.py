"""FastAPI dependency injection helpers."""

from fastapi import Request

from ridedispatch.services.container import DispatchServices
from ridedispatch.services.drivers import DriverPresence
from ridedispatch.services.lifecycle import RideLifecycle


def get_services(request: Request) -> DispatchServices:
    """The ``DispatchServices`` built for this application instance."""
    return request.app.state.services


def get_lifecycle(request: Request) -> RideLifecycle:
    return get_services(request).lifecycle


def get_drivers(request: Request) -> DriverPresence:
    return get_services(request).drivers
