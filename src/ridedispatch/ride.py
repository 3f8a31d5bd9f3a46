"""Ride state machine and models."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, Field

from ridedispatch.core.exceptions import InvalidStatusTransition
from ridedispatch.fare import FareBreakdown, RideType


class RideStatus(str, Enum):
    """Ride lifecycle states. Values are the persisted tokens."""

    REQUESTED = "requested"
    ACCEPTED = "accepted"
    ARRIVING = "arriving"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class RequestStatus(str, Enum):
    """Per-driver ride request states. PENDING moves to exactly one of the others."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    TAKEN = "taken"


TERMINAL_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED})
ACTIVE_STATUSES = frozenset(set(RideStatus) - TERMINAL_STATUSES)

VALID_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.REQUESTED: {RideStatus.ACCEPTED, RideStatus.CANCELLED},
    RideStatus.ACCEPTED: {RideStatus.ARRIVING, RideStatus.CANCELLED},
    RideStatus.ARRIVING: {RideStatus.IN_PROGRESS, RideStatus.CANCELLED},
    RideStatus.IN_PROGRESS: {RideStatus.COMPLETED, RideStatus.CANCELLED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
}

STATUS_TIMESTAMP_FIELD: dict[RideStatus, str] = {
    RideStatus.ACCEPTED: "accepted_at",
    RideStatus.ARRIVING: "arrived_at",
    RideStatus.IN_PROGRESS: "started_at",
    RideStatus.COMPLETED: "completed_at",
    RideStatus.CANCELLED: "cancelled_at",
}

CancelledBy = Literal["rider", "driver", "system"]


class AcceptedPayload(BaseModel):
    kind: Literal["accepted"] = "accepted"
    target: ClassVar[RideStatus] = RideStatus.ACCEPTED

    driver_id: str = Field(min_length=1)

    def field_changes(self) -> dict[str, Any]:
        return {"driver_id": self.driver_id}


class ArrivingPayload(BaseModel):
    kind: Literal["arriving"] = "arriving"
    target: ClassVar[RideStatus] = RideStatus.ARRIVING

    def field_changes(self) -> dict[str, Any]:
        return {}


class StartedPayload(BaseModel):
    kind: Literal["started"] = "started"
    target: ClassVar[RideStatus] = RideStatus.IN_PROGRESS

    def field_changes(self) -> dict[str, Any]:
        return {}


class CompletedPayload(BaseModel):
    kind: Literal["completed"] = "completed"
    target: ClassVar[RideStatus] = RideStatus.COMPLETED

    actual_distance_km: float = Field(ge=0)
    actual_duration_sec: int = Field(ge=0)
    actual_fare: int = Field(ge=0)
    actual_fare_breakdown: FareBreakdown | None = None

    def field_changes(self) -> dict[str, Any]:
        return {
            "actual_distance_km": self.actual_distance_km,
            "actual_duration_sec": self.actual_duration_sec,
            "actual_fare": self.actual_fare,
            "actual_fare_breakdown": self.actual_fare_breakdown,
        }


class CancelledPayload(BaseModel):
    kind: Literal["cancelled"] = "cancelled"
    target: ClassVar[RideStatus] = RideStatus.CANCELLED

    cancelled_by: CancelledBy
    reason: str | None = None
    cancellation_fee: int = Field(default=0, ge=0)

    def field_changes(self) -> dict[str, Any]:
        return {
            "cancelled_by": self.cancelled_by,
            "cancellation_reason": self.reason,
            "cancellation_fee": self.cancellation_fee,
        }


TransitionPayload = Annotated[
    AcceptedPayload | ArrivingPayload | StartedPayload | CompletedPayload | CancelledPayload,
    Field(discriminator="kind"),
]


class Location(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    address: str | None = None

    @property
    def point(self) -> tuple[float, float]:
        return (self.lat, self.lon)


class Ride(BaseModel):
    """Ride with state machine logic."""

    id: int
    uuid: str
    rider_id: str
    driver_id: str | None = None
    pickup: Location
    dropoff: Location
    ride_type: RideType
    status: RideStatus = Field(default=RideStatus.REQUESTED)
    estimated_fare: int
    estimated_fare_breakdown: FareBreakdown | None = None
    actual_fare: int | None = None
    actual_fare_breakdown: FareBreakdown | None = None
    surge_multiplier: float = 1.0
    estimated_distance_km: float
    estimated_duration_sec: int
    actual_distance_km: float | None = None
    actual_duration_sec: int | None = None
    requested_at: datetime
    accepted_at: datetime | None = None
    arrived_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    # Rating given to the rider (by the driver) and to the driver (by the rider)
    rider_rating: int | None = None
    rider_feedback: str | None = None
    driver_rating: int | None = None
    driver_feedback: str | None = None
    cancelled_by: CancelledBy | None = None
    cancellation_reason: str | None = None
    cancellation_fee: int = 0

    def transition_changes(self, payload: TransitionPayload, now: datetime) -> dict[str, Any]:
        """Field updates that move this ride along one lifecycle edge.

        Raises InvalidStatusTransition, without touching the ride, for any edge
        outside VALID_TRANSITIONS (re-entering the current status included) and
        for a status whose timestamp has already been stamped.
        """
        target = payload.target
        if target not in VALID_TRANSITIONS[self.status]:
            raise InvalidStatusTransition(self.status.value, target.value, self.id)

        timestamp_field = STATUS_TIMESTAMP_FIELD[target]
        if getattr(self, timestamp_field) is not None:
            raise InvalidStatusTransition(self.status.value, target.value, self.id)

        changes: dict[str, Any] = {"status": target, timestamp_field: now}
        changes.update(payload.field_changes())
        return changes

    def transition(self, payload: TransitionPayload, now: datetime) -> "Ride":
        """Return a copy of this ride after applying payload at now."""
        return self.model_copy(update=self.transition_changes(payload, now))


class RideRequest(BaseModel):
    """One driver's invitation to take a ride."""

    id: int
    ride_id: int
    driver_id: str
    distance_to_pickup_km: float
    eta_seconds: int
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime
    responded_at: datetime | None = None
