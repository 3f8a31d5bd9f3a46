"""Tests for the ride lifecycle state machine."""

from datetime import timedelta

import pytest
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ridedispatch.core.exceptions import InvalidStatusTransition
from ridedispatch.fare import RideType
from ridedispatch.ride import (
    VALID_TRANSITIONS,
    AcceptedPayload,
    ArrivingPayload,
    CancelledPayload,
    CompletedPayload,
    Location,
    Ride,
    RideStatus,
    StartedPayload,
    TransitionPayload,
)
from tests.conftest import NOW

PAYLOADS = {
    RideStatus.ACCEPTED: AcceptedPayload(driver_id="driver-1"),
    RideStatus.ARRIVING: ArrivingPayload(),
    RideStatus.IN_PROGRESS: StartedPayload(),
    RideStatus.COMPLETED: CompletedPayload(
        actual_distance_km=5.0, actual_duration_sec=900, actual_fare=2900
    ),
    RideStatus.CANCELLED: CancelledPayload(cancelled_by="rider", reason="changed plans"),
}

# Shortest path from REQUESTED to each status
PATHS = {
    RideStatus.REQUESTED: [],
    RideStatus.ACCEPTED: [RideStatus.ACCEPTED],
    RideStatus.ARRIVING: [RideStatus.ACCEPTED, RideStatus.ARRIVING],
    RideStatus.IN_PROGRESS: [RideStatus.ACCEPTED, RideStatus.ARRIVING, RideStatus.IN_PROGRESS],
    RideStatus.COMPLETED: [
        RideStatus.ACCEPTED,
        RideStatus.ARRIVING,
        RideStatus.IN_PROGRESS,
        RideStatus.COMPLETED,
    ],
    RideStatus.CANCELLED: [RideStatus.CANCELLED],
}


def _new_ride() -> Ride:
    return Ride(
        id=1,
        uuid="00000000-0000-0000-0000-000000000001",
        rider_id="rider-1",
        pickup=Location(lat=4.85, lon=31.58),
        dropoff=Location(lat=4.87, lon=31.60),
        ride_type=RideType.STANDARD,
        estimated_fare=2910,
        estimated_distance_km=5.2,
        estimated_duration_sec=900,
        requested_at=NOW,
    )


def _ride_in(status: RideStatus) -> Ride:
    ride = _new_ride()
    for step, target in enumerate(PATHS[status], start=1):
        ride = ride.transition(PAYLOADS[target], NOW + timedelta(minutes=step))
    return ride


ILLEGAL_EDGES = [
    (current, target)
    for current in RideStatus
    for target in PAYLOADS
    if target not in VALID_TRANSITIONS[current]
]


@pytest.mark.unit
class TestTransitions:
    def test_happy_path_stamps_each_timestamp_once(self):
        ride = _ride_in(RideStatus.COMPLETED)

        assert ride.status == RideStatus.COMPLETED
        assert ride.driver_id == "driver-1"
        assert ride.accepted_at == NOW + timedelta(minutes=1)
        assert ride.arrived_at == NOW + timedelta(minutes=2)
        assert ride.started_at == NOW + timedelta(minutes=3)
        assert ride.completed_at == NOW + timedelta(minutes=4)
        assert ride.actual_fare == 2900

    @pytest.mark.parametrize("status", [s for s in RideStatus if not s.is_terminal])
    def test_cancel_reachable_from_every_active_state(self, status):
        ride = _ride_in(status).transition(PAYLOADS[RideStatus.CANCELLED], NOW + timedelta(hours=1))

        assert ride.status == RideStatus.CANCELLED
        assert ride.cancelled_by == "rider"
        assert ride.cancellation_reason == "changed plans"
        assert ride.cancelled_at == NOW + timedelta(hours=1)

    @pytest.mark.parametrize(("current", "target"), ILLEGAL_EDGES)
    def test_illegal_edges_raise_and_leave_ride_unchanged(self, current, target):
        ride = _ride_in(current)
        before = ride.model_copy(deep=True)

        with pytest.raises(InvalidStatusTransition) as exc_info:
            ride.transition(PAYLOADS[target], NOW + timedelta(hours=2))

        assert ride == before
        assert exc_info.value.current == current.value
        assert exc_info.value.target == target.value

    def test_reentering_same_state_is_an_error(self):
        ride = _ride_in(RideStatus.ACCEPTED)
        with pytest.raises(InvalidStatusTransition):
            ride.transition(AcceptedPayload(driver_id="driver-2"), NOW)

    def test_terminal_states_have_no_edges(self):
        assert RideStatus.COMPLETED.is_terminal
        assert RideStatus.CANCELLED.is_terminal
        assert not VALID_TRANSITIONS[RideStatus.COMPLETED]
        assert not VALID_TRANSITIONS[RideStatus.CANCELLED]

    def test_status_tokens_are_lowercase(self):
        assert [s.value for s in RideStatus] == [
            "requested",
            "accepted",
            "arriving",
            "in_progress",
            "completed",
            "cancelled",
        ]


@pytest.mark.unit
class TestPayloads:
    def test_payload_union_discriminates_on_kind(self):
        adapter = TypeAdapter(TransitionPayload)

        payload = adapter.validate_python({"kind": "accepted", "driver_id": "d1"})

        assert isinstance(payload, AcceptedPayload)
        assert payload.target == RideStatus.ACCEPTED

    def test_accepted_requires_driver(self):
        with pytest.raises(PydanticValidationError):
            AcceptedPayload(driver_id="")

    def test_completed_rejects_negative_amounts(self):
        with pytest.raises(PydanticValidationError):
            CompletedPayload(actual_distance_km=-1, actual_duration_sec=10, actual_fare=100)

    def test_cancelled_by_is_restricted(self):
        with pytest.raises(PydanticValidationError):
            CancelledPayload(cancelled_by="dispatcher")
