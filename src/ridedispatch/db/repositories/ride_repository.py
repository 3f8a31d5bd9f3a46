"""Ride repository: creation, lifecycle transitions and lookups."""

import uuid
from datetime import datetime
from typing import Any, Literal

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ridedispatch.core.exceptions import (
    AlreadyRated,
    ConflictError,
    InvalidStatusTransition,
    NotFoundError,
    RideAlreadyAccepted,
    ValidationError,
)
from ridedispatch.fare import FareBreakdown, RideType
from ridedispatch.ride import (
    ACTIVE_STATUSES,
    AcceptedPayload,
    Location,
    RideStatus,
    TransitionPayload,
)
from ridedispatch.ride import Ride as RideDomain

from ..schema import Ride

ACTIVE_STATUS_VALUES = {s.value for s in ACTIVE_STATUSES}

_BREAKDOWN_COLUMNS = {
    "estimated_fare_breakdown": "estimated_fare_json",
    "actual_fare_breakdown": "actual_fare_json",
}


class RideRepository:
    """Repository for ride CRUD and the atomic status transitions."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        rider_id: str,
        pickup: Location,
        dropoff: Location,
        ride_type: RideType,
        fare: FareBreakdown,
        distance_km: float,
        duration_sec: int,
        now: datetime,
    ) -> RideDomain:
        """Create a new ride in REQUESTED state."""
        ride = Ride(
            uuid=str(uuid.uuid4()),
            rider_id=rider_id,
            status=RideStatus.REQUESTED.value,
            ride_type=RideType(ride_type).value,
            pickup_lat=pickup.lat,
            pickup_lon=pickup.lon,
            pickup_address=pickup.address,
            dropoff_lat=dropoff.lat,
            dropoff_lon=dropoff.lon,
            dropoff_address=dropoff.address,
            estimated_fare=fare.total,
            estimated_fare_json=fare.model_dump_json(),
            surge_multiplier=fare.surge_multiplier,
            estimated_distance_km=distance_km,
            estimated_duration_sec=duration_sec,
            cancellation_fee=0,
            requested_at=now,
            updated_at=now,
        )
        self.session.add(ride)
        self.session.flush()
        return self._to_domain(ride)

    def get(self, ride_id: int) -> RideDomain | None:
        """Get ride by ID, returning domain model."""
        ride = self.session.get(Ride, ride_id)
        if ride is None:
            return None
        return self._to_domain(ride)

    def get_by_uuid(self, ride_uuid: str) -> RideDomain | None:
        ride = self.session.execute(select(Ride).where(Ride.uuid == ride_uuid)).scalar_one_or_none()
        return self._to_domain(ride) if ride else None

    def require(self, ride_id: int) -> RideDomain:
        ride = self.get(ride_id)
        if ride is None:
            raise NotFoundError(f"Ride {ride_id} not found", {"ride_id": ride_id})
        return ride

    def lock(self, ride_id: int) -> RideDomain:
        """Read the ride with a row lock held until the transaction ends."""
        stmt = (
            select(Ride)
            .where(Ride.id == ride_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        ride = self.session.execute(stmt).scalar_one_or_none()
        if ride is None:
            raise NotFoundError(f"Ride {ride_id} not found", {"ride_id": ride_id})
        return self._to_domain(ride)

    def apply_transition(
        self,
        ride_id: int,
        payload: TransitionPayload,
        now: datetime,
    ) -> RideDomain:
        """Move a ride along one lifecycle edge.

        The row is locked, the edge validated against the locked state, and the
        write is a compare-and-swap on the status read under that lock (plus an
        empty driver_id for acceptance). Losing the swap means another caller
        changed the ride first.

        Raises:
            NotFoundError: If the ride does not exist
            InvalidStatusTransition: If the edge is not allowed; nothing is written
            RideAlreadyAccepted: If an acceptance lost the race
            ConflictError: If any other transition lost the race
        """
        current = self.lock(ride_id)
        accepting = isinstance(payload, AcceptedPayload)

        if accepting and current.status != RideStatus.REQUESTED and not current.status.is_terminal:
            raise RideAlreadyAccepted(
                f"Ride {ride_id} was already accepted",
                {"ride_id": ride_id, "status": current.status.value},
            )

        changes = current.transition_changes(payload, now)

        stmt = (
            update(Ride)
            .where(Ride.id == ride_id, Ride.status == current.status.value)
            .values(**self._to_columns(changes), updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        if accepting:
            stmt = stmt.where(Ride.driver_id.is_(None))

        result = self.session.execute(stmt)
        if result.rowcount != 1:
            if accepting:
                raise RideAlreadyAccepted(f"Ride {ride_id} was already accepted", {"ride_id": ride_id})
            raise ConflictError(f"Ride {ride_id} changed concurrently", {"ride_id": ride_id})

        return current.model_copy(update=changes)

    def add_rating(
        self,
        ride_id: int,
        rated_by: Literal["rider", "driver"],
        rating: int,
        feedback: str | None = None,
    ) -> RideDomain:
        """Record a post-ride rating. The rider rates the driver and vice versa."""
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5", {"rating": rating})

        current = self.lock(ride_id)
        if current.status != RideStatus.COMPLETED:
            raise InvalidStatusTransition(current.status.value, "rated", ride_id)

        rating_field, feedback_field = (
            ("driver_rating", "driver_feedback")
            if rated_by == "rider"
            else ("rider_rating", "rider_feedback")
        )
        if getattr(current, rating_field) is not None:
            raise AlreadyRated(
                f"Ride {ride_id} was already rated by the {rated_by}",
                {"ride_id": ride_id, "rated_by": rated_by},
            )

        changes = {rating_field: rating, feedback_field: feedback}
        self.session.execute(
            update(Ride)
            .where(Ride.id == ride_id)
            .values(**changes)
            .execution_options(synchronize_session="fetch")
        )
        return current.model_copy(update=changes)

    def find_active_by_rider(self, rider_id: str) -> RideDomain | None:
        stmt = (
            select(Ride)
            .where(Ride.rider_id == rider_id, Ride.status.in_(ACTIVE_STATUS_VALUES))
            .order_by(Ride.requested_at.desc())
            .limit(1)
        )
        ride = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(ride) if ride else None

    def find_active_by_driver(self, driver_id: str) -> RideDomain | None:
        stmt = (
            select(Ride)
            .where(Ride.driver_id == driver_id, Ride.status.in_(ACTIVE_STATUS_VALUES))
            .order_by(Ride.requested_at.desc())
            .limit(1)
        )
        ride = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(ride) if ride else None

    def history(
        self,
        *,
        rider_id: str | None = None,
        driver_id: str | None = None,
        status: RideStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[RideDomain], int]:
        """Page of rides for a rider or driver, newest first, with the total count."""
        if (rider_id is None) == (driver_id is None):
            raise ValidationError("Exactly one of rider_id or driver_id is required")

        condition = Ride.rider_id == rider_id if rider_id is not None else Ride.driver_id == driver_id
        filters = [condition]
        if status is not None:
            filters.append(Ride.status == status.value)

        total = self.session.execute(
            select(func.count()).select_from(Ride).where(*filters)
        ).scalar() or 0
        stmt = (
            select(Ride)
            .where(*filters)
            .order_by(Ride.requested_at.desc(), Ride.id.desc())
            .limit(limit)
            .offset(offset)
        )
        rides = [self._to_domain(r) for r in self.session.execute(stmt).scalars().all()]
        return rides, total

    @staticmethod
    def _to_columns(changes: dict[str, Any]) -> dict[str, Any]:
        columns: dict[str, Any] = {}
        for name, value in changes.items():
            if name in _BREAKDOWN_COLUMNS:
                columns[_BREAKDOWN_COLUMNS[name]] = value.model_dump_json() if value else None
            elif isinstance(value, RideStatus):
                columns[name] = value.value
            else:
                columns[name] = value
        return columns

    @staticmethod
    def _to_domain(ride: Ride) -> RideDomain:
        """Convert ORM model to domain model."""
        return RideDomain(
            id=ride.id,
            uuid=ride.uuid,
            rider_id=ride.rider_id,
            driver_id=ride.driver_id,
            pickup=Location(lat=ride.pickup_lat, lon=ride.pickup_lon, address=ride.pickup_address),
            dropoff=Location(
                lat=ride.dropoff_lat, lon=ride.dropoff_lon, address=ride.dropoff_address
            ),
            ride_type=RideType(ride.ride_type),
            status=RideStatus(ride.status),
            estimated_fare=ride.estimated_fare,
            estimated_fare_breakdown=(
                FareBreakdown.model_validate_json(ride.estimated_fare_json)
                if ride.estimated_fare_json
                else None
            ),
            actual_fare=ride.actual_fare,
            actual_fare_breakdown=(
                FareBreakdown.model_validate_json(ride.actual_fare_json)
                if ride.actual_fare_json
                else None
            ),
            surge_multiplier=ride.surge_multiplier,
            estimated_distance_km=ride.estimated_distance_km,
            estimated_duration_sec=ride.estimated_duration_sec,
            actual_distance_km=ride.actual_distance_km,
            actual_duration_sec=ride.actual_duration_sec,
            requested_at=ride.requested_at,
            accepted_at=ride.accepted_at,
            arrived_at=ride.arrived_at,
            started_at=ride.started_at,
            completed_at=ride.completed_at,
            cancelled_at=ride.cancelled_at,
            rider_rating=ride.rider_rating,
            rider_feedback=ride.rider_feedback,
            driver_rating=ride.driver_rating,
            driver_feedback=ride.driver_feedback,
            cancelled_by=ride.cancelled_by,
            cancellation_reason=ride.cancellation_reason,
            cancellation_fee=ride.cancellation_fee or 0,
        )
