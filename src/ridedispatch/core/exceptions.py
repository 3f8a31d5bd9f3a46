"""Standardized exception hierarchy for the dispatch core.

Every error carries a stable ``kind`` so callers at the service boundary can
map it to a response without inspecting class names, and a human-readable
message. ``to_dict()`` is the only shape that should cross that boundary.
"""

from typing import Any


class DispatchError(Exception):
    """Base exception for all dispatch errors."""

    kind = "dispatch_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Structured error for callers; carries no stack or internals."""
        return {"kind": self.kind, "reason": self.message, "details": dict(self.details)}


class TransientError(DispatchError):
    """Errors that may succeed on retry."""

    kind = "transient"


class DependencyUnavailable(TransientError):
    """A backing store (GeoIndex, Ledger, Cache) timed out or is unreachable."""

    kind = "dependency_unavailable"

    def __init__(
        self,
        dependency: str,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message or f"{dependency} is unavailable", details)
        self.dependency = dependency
        self.details.setdefault("dependency", dependency)


class PermanentError(DispatchError):
    """Errors that will not succeed on retry."""

    kind = "permanent"


class ValidationError(PermanentError):
    """Malformed input."""

    kind = "validation_error"


class NotFoundError(PermanentError):
    """Requested ride, request or driver does not exist."""

    kind = "not_found"


class InvalidStatusTransition(PermanentError):
    """A ride lifecycle edge that is not allowed."""

    kind = "invalid_status_transition"

    def __init__(self, current: str, target: str, ride_id: int | None = None):
        super().__init__(
            f"Cannot transition ride from {current} to {target}",
            {"current_status": current, "target_status": target, "ride_id": ride_id},
        )
        self.current = current
        self.target = target


class ConflictError(PermanentError):
    """Expected under concurrency; the caller should try another ride or driver."""

    kind = "conflict"


class RideAlreadyAccepted(ConflictError):
    kind = "ride_already_accepted"


class RiderHasActiveRide(ConflictError):
    kind = "rider_has_active_ride"


class DriverAlreadyAssigned(ConflictError):
    kind = "driver_already_assigned"


class AlreadyRated(ConflictError):
    kind = "already_rated"


class ConfigurationError(PermanentError):
    """Missing or invalid configuration."""

    kind = "configuration_error"
