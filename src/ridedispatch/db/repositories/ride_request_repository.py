"""Per-driver ride request repository."""

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ridedispatch.ride import RequestStatus
from ridedispatch.ride import RideRequest as RideRequestDomain

from ..schema import RideRequest


class RideRequestRepository:
    """Ride requests move PENDING -> terminal exactly once; every write is guarded on PENDING."""

    def __init__(self, session: Session):
        self.session = session

    def create_batch(
        self,
        ride_id: int,
        candidates: Iterable[tuple[str, float, int]],
        now: datetime,
    ) -> list[RideRequestDomain]:
        """Create PENDING requests from (driver_id, distance_km, eta_seconds) tuples."""
        rows = [
            RideRequest(
                ride_id=ride_id,
                driver_id=driver_id,
                distance_to_pickup_km=distance_km,
                eta_seconds=eta_seconds,
                status=RequestStatus.PENDING.value,
                created_at=now,
            )
            for driver_id, distance_km, eta_seconds in candidates
        ]
        self.session.add_all(rows)
        self.session.flush()
        return [self._to_domain(r) for r in rows]

    def get(self, ride_id: int, driver_id: str) -> RideRequestDomain | None:
        stmt = select(RideRequest).where(
            RideRequest.ride_id == ride_id, RideRequest.driver_id == driver_id
        )
        row = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(row) if row else None

    def list_for_ride(
        self, ride_id: int, status: RequestStatus | None = None
    ) -> list[RideRequestDomain]:
        stmt = select(RideRequest).where(RideRequest.ride_id == ride_id)
        if status is not None:
            stmt = stmt.where(RideRequest.status == status.value)
        stmt = stmt.order_by(RideRequest.distance_to_pickup_km, RideRequest.id)
        return [self._to_domain(r) for r in self.session.execute(stmt).scalars().all()]

    def list_pending_for_driver(self, driver_id: str) -> list[RideRequestDomain]:
        stmt = (
            select(RideRequest)
            .where(
                RideRequest.driver_id == driver_id,
                RideRequest.status == RequestStatus.PENDING.value,
            )
            .order_by(RideRequest.created_at.desc())
        )
        return [self._to_domain(r) for r in self.session.execute(stmt).scalars().all()]

    def driver_ids_for_ride(self, ride_id: int) -> set[str]:
        """Every driver already asked about this ride, whatever the outcome."""
        stmt = select(RideRequest.driver_id).where(RideRequest.ride_id == ride_id)
        return set(self.session.execute(stmt).scalars().all())

    def ride_ids_with_pending_before(self, cutoff: datetime) -> list[int]:
        stmt = (
            select(RideRequest.ride_id)
            .where(
                RideRequest.status == RequestStatus.PENDING.value,
                RideRequest.created_at < cutoff,
            )
            .distinct()
            .order_by(RideRequest.ride_id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def count_pending(self, ride_id: int) -> int:
        stmt = (
            select(func.count())
            .select_from(RideRequest)
            .where(
                RideRequest.ride_id == ride_id,
                RideRequest.status == RequestStatus.PENDING.value,
            )
        )
        return self.session.execute(stmt).scalar() or 0

    def respond(
        self,
        ride_id: int,
        driver_id: str,
        status: RequestStatus,
        now: datetime,
    ) -> bool:
        """Settle one PENDING request. Returns False if it was not PENDING."""
        stmt = (
            update(RideRequest)
            .where(
                RideRequest.ride_id == ride_id,
                RideRequest.driver_id == driver_id,
                RideRequest.status == RequestStatus.PENDING.value,
            )
            .values(status=status.value, responded_at=now)
            .execution_options(synchronize_session="fetch")
        )
        return self.session.execute(stmt).rowcount == 1

    def mark_taken(self, ride_id: int, winner_driver_id: str, now: datetime) -> list[str]:
        """Mark every other PENDING request for the ride TAKEN; returns the losing drivers."""
        return self._settle_pending(
            ride_id,
            RequestStatus.TAKEN,
            now,
            RideRequest.driver_id != winner_driver_id,
        )

    def expire_created_before(self, ride_id: int, cutoff: datetime, now: datetime) -> list[str]:
        """Mark PENDING requests created strictly before cutoff EXPIRED."""
        return self._settle_pending(
            ride_id,
            RequestStatus.EXPIRED,
            now,
            RideRequest.created_at < cutoff,
        )

    def close_pending(self, ride_id: int, now: datetime) -> list[str]:
        """Expire every PENDING request for a ride that left REQUESTED without one."""
        return self._settle_pending(ride_id, RequestStatus.EXPIRED, now)

    def _settle_pending(
        self,
        ride_id: int,
        status: RequestStatus,
        now: datetime,
        *conditions: object,
    ) -> list[str]:
        filters = [
            RideRequest.ride_id == ride_id,
            RideRequest.status == RequestStatus.PENDING.value,
            *conditions,
        ]
        driver_ids = list(
            self.session.execute(select(RideRequest.driver_id).where(*filters)).scalars().all()
        )
        if not driver_ids:
            return []
        self.session.execute(
            update(RideRequest)
            .where(*filters)
            .values(status=status.value, responded_at=now)
            .execution_options(synchronize_session="fetch")
        )
        return driver_ids

    @staticmethod
    def _to_domain(row: RideRequest) -> RideRequestDomain:
        return RideRequestDomain(
            id=row.id,
            ride_id=row.ride_id,
            driver_id=row.driver_id,
            distance_to_pickup_km=row.distance_to_pickup_km,
            eta_seconds=row.eta_seconds,
            status=RequestStatus(row.status),
            created_at=row.created_at,
            responded_at=row.responded_at,
        )
