"""Tests for the ride repository."""

from datetime import timedelta

import pytest

from ridedispatch.core.exceptions import (
    AlreadyRated,
    InvalidStatusTransition,
    NotFoundError,
    RideAlreadyAccepted,
    ValidationError,
)
from ridedispatch.db.repositories import RideRepository
from ridedispatch.db.schema import Ride as RideRow
from ridedispatch.fare import RideType
from ridedispatch.ride import (
    AcceptedPayload,
    ArrivingPayload,
    CancelledPayload,
    CompletedPayload,
    RideStatus,
    StartedPayload,
)
from tests.conftest import NOW


def _row_snapshot(session_maker, ride_id):
    with session_maker() as session:
        row = session.get(RideRow, ride_id)
        return {c.name: getattr(row, c.name) for c in RideRow.__table__.columns}


def _complete(session_maker, ride_id):
    with session_maker() as session:
        repo = RideRepository(session)
        repo.apply_transition(ride_id, AcceptedPayload(driver_id="driver-1"), NOW)
        repo.apply_transition(ride_id, ArrivingPayload(), NOW + timedelta(minutes=3))
        repo.apply_transition(ride_id, StartedPayload(), NOW + timedelta(minutes=5))
        repo.apply_transition(
            ride_id,
            CompletedPayload(actual_distance_km=2.4, actual_duration_sec=600, actual_fare=1800),
            NOW + timedelta(minutes=15),
        )
        session.commit()


@pytest.mark.unit
class TestRideRepository:
    def test_create_persists_requested_ride(self, session_maker, make_ride):
        ride = make_ride()

        with session_maker() as session:
            stored = RideRepository(session).get(ride.id)

        assert stored.status == RideStatus.REQUESTED
        assert stored.driver_id is None
        assert stored.ride_type == RideType.STANDARD
        assert stored.requested_at == NOW
        assert stored.estimated_fare_breakdown.total == stored.estimated_fare
        assert stored.pickup.address == "Juba Town"

    def test_get_by_uuid(self, session_maker, make_ride):
        ride = make_ride()
        with session_maker() as session:
            assert RideRepository(session).get_by_uuid(ride.uuid).id == ride.id

    def test_require_missing_ride(self, session_maker):
        with session_maker() as session, pytest.raises(NotFoundError):
            RideRepository(session).require(999)

    def test_accept_sets_driver_and_timestamp(self, session_maker, make_ride):
        ride = make_ride()

        with session_maker() as session:
            accepted = RideRepository(session).apply_transition(
                ride.id, AcceptedPayload(driver_id="driver-1"), NOW + timedelta(seconds=10)
            )
            session.commit()

        assert accepted.status == RideStatus.ACCEPTED
        with session_maker() as session:
            stored = RideRepository(session).get(ride.id)
        assert stored.driver_id == "driver-1"
        assert stored.accepted_at == NOW + timedelta(seconds=10)

    def test_second_accept_is_a_conflict(self, session_maker, make_ride):
        ride = make_ride()
        with session_maker() as session:
            RideRepository(session).apply_transition(
                ride.id, AcceptedPayload(driver_id="driver-1"), NOW
            )
            session.commit()

        with session_maker() as session, pytest.raises(RideAlreadyAccepted):
            RideRepository(session).apply_transition(
                ride.id, AcceptedPayload(driver_id="driver-2"), NOW
            )

    def test_illegal_transition_leaves_row_unchanged(self, session_maker, make_ride):
        ride = make_ride()
        before = _row_snapshot(session_maker, ride.id)

        with session_maker() as session, pytest.raises(InvalidStatusTransition):
            RideRepository(session).apply_transition(ride.id, StartedPayload(), NOW)

        assert _row_snapshot(session_maker, ride.id) == before

    @pytest.mark.parametrize(
        "payload",
        [
            AcceptedPayload(driver_id="driver-2"),
            CancelledPayload(cancelled_by="rider"),
            ArrivingPayload(),
        ],
    )
    def test_terminal_ride_rejects_everything(self, session_maker, make_ride, payload):
        ride = make_ride()
        _complete(session_maker, ride.id)
        before = _row_snapshot(session_maker, ride.id)

        with session_maker() as session, pytest.raises(InvalidStatusTransition):
            RideRepository(session).apply_transition(ride.id, payload, NOW + timedelta(hours=1))

        assert _row_snapshot(session_maker, ride.id) == before

    def test_cancel_records_who_and_why(self, session_maker, make_ride):
        ride = make_ride()

        with session_maker() as session:
            cancelled = RideRepository(session).apply_transition(
                ride.id,
                CancelledPayload(cancelled_by="rider", reason="too slow", cancellation_fee=0),
                NOW + timedelta(minutes=1),
            )
            session.commit()

        assert cancelled.cancelled_by == "rider"
        assert cancelled.cancellation_reason == "too slow"
        with session_maker() as session:
            assert RideRepository(session).get(ride.id).cancellation_reason == "too slow"


@pytest.mark.unit
class TestRatings:
    def test_rider_rates_driver_and_driver_rates_rider(self, session_maker, make_ride):
        ride = make_ride()
        _complete(session_maker, ride.id)

        with session_maker() as session:
            repo = RideRepository(session)
            repo.add_rating(ride.id, "rider", 5, "great driver")
            rated = repo.add_rating(ride.id, "driver", 4)
            session.commit()

        assert rated.driver_rating == 5
        assert rated.driver_feedback == "great driver"
        assert rated.rider_rating == 4

    def test_rating_only_once_per_side(self, session_maker, make_ride):
        ride = make_ride()
        _complete(session_maker, ride.id)
        with session_maker() as session:
            RideRepository(session).add_rating(ride.id, "rider", 5)
            session.commit()

        with session_maker() as session, pytest.raises(AlreadyRated):
            RideRepository(session).add_rating(ride.id, "rider", 3)

    def test_rating_requires_completed_ride(self, session_maker, make_ride):
        ride = make_ride()
        with session_maker() as session, pytest.raises(InvalidStatusTransition):
            RideRepository(session).add_rating(ride.id, "rider", 5)

    @pytest.mark.parametrize("rating", [0, 6])
    def test_rating_range(self, session_maker, make_ride, rating):
        ride = make_ride()
        with session_maker() as session, pytest.raises(ValidationError):
            RideRepository(session).add_rating(ride.id, "rider", rating)


@pytest.mark.unit
class TestLookups:
    def test_active_ride_lookups(self, session_maker, make_ride):
        ride = make_ride(rider_id="rider-9")
        with session_maker() as session:
            RideRepository(session).apply_transition(
                ride.id, AcceptedPayload(driver_id="driver-9"), NOW
            )
            session.commit()

        with session_maker() as session:
            repo = RideRepository(session)
            assert repo.find_active_by_rider("rider-9").id == ride.id
            assert repo.find_active_by_driver("driver-9").id == ride.id
            assert repo.find_active_by_rider("someone-else") is None

    def test_completed_ride_is_not_active(self, session_maker, make_ride):
        ride = make_ride(rider_id="rider-9")
        _complete(session_maker, ride.id)

        with session_maker() as session:
            assert RideRepository(session).find_active_by_rider("rider-9") is None

    def test_history_is_newest_first_with_total(self, session_maker, make_ride):
        ids = [
            make_ride(rider_id="rider-h", requested_at=NOW + timedelta(minutes=i)).id
            for i in range(3)
        ]
        make_ride(rider_id="other")

        with session_maker() as session:
            rides, total = RideRepository(session).history(rider_id="rider-h", limit=2)

        assert total == 3
        assert [r.id for r in rides] == [ids[2], ids[1]]

    def test_history_status_filter(self, session_maker, make_ride):
        done = make_ride(rider_id="rider-h")
        make_ride(rider_id="rider-h", requested_at=NOW + timedelta(minutes=1))
        _complete(session_maker, done.id)

        with session_maker() as session:
            rides, total = RideRepository(session).history(
                rider_id="rider-h", status=RideStatus.COMPLETED
            )

        assert total == 1
        assert rides[0].id == done.id

    def test_history_needs_exactly_one_party(self, session_maker):
        with session_maker() as session, pytest.raises(ValidationError):
            RideRepository(session).history()
