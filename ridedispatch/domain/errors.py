"""
Error taxonomy shared by the dispatcher, the lifecycle controller and the API.

Every error carries a machine-readable ``code`` and an HTTP-equivalent
``status_code`` so the API layer can render a structured outcome without
knowing which component raised it.
"""

from __future__ import annotations

from typing import Any, Optional


class DispatchError(Exception):
    """Base class for all engine errors."""

    status_code = 500
    error = "Internal Server Error"
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "status": self.status_code,
            "error": self.error,
            "message": self.message,
            "code": self.code,
        }
        if self.details:
            body["details"] = self.details
        return body


class NotFound(DispatchError):
    """Referenced ride, driver or rider does not exist."""

    status_code = 404
    error = "Not Found"
    default_code = "NOT_FOUND"


class Conflict(DispatchError):
    """
    The ride is not in a status that permits the transition, or the acting
    party is not the one assigned to the ride.  Safe to retry after
    refetching the ride.
    """

    status_code = 409
    error = "Conflict"
    default_code = "INVALID_STATUS"


class NoCandidate(DispatchError):
    """Proximity search found no eligible driver.  A business outcome."""

    status_code = 400
    error = "No Drivers Available"
    default_code = "NO_NEARBY_DRIVERS"


class ValidationError(DispatchError):
    """Malformed coordinates or missing fields on ride creation."""

    status_code = 400
    error = "Bad Request"
    default_code = "VALIDATION_ERROR"


class DependencyFailure(DispatchError):
    """Ride store, driver index or job queue is unreachable or failing."""

    status_code = 503
    error = "Service Unavailable"
    default_code = "DEPENDENCY_FAILURE"
