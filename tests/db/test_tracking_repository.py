"""Tests for ride tracking and waypoint accumulation."""

from datetime import timedelta

import pytest

from ridedispatch.db.repositories import TrackingRepository
from ridedispatch.geo.distance import haversine_distance_km
from tests.conftest import NOW


@pytest.mark.unit
class TestTrackingRepository:
    def test_waypoints_accumulate_haversine_segments(self, session_maker, make_ride):
        ride = make_ride()
        points = [(4.850, 31.580), (4.860, 31.580), (4.860, 31.590)]

        with session_maker() as session:
            repo = TrackingRepository(session)
            repo.start(ride.id, NOW)
            for i, (lat, lon) in enumerate(points):
                total = repo.add_waypoint(ride.id, lat, lon, None, None, NOW + timedelta(seconds=i))
            session.commit()

        expected = haversine_distance_km(*points[0], *points[1]) + haversine_distance_km(
            *points[1], *points[2]
        )
        assert total == pytest.approx(expected)

        with session_maker() as session:
            repo = TrackingRepository(session)
            assert repo.get(ride.id).waypoint_count == 3
            assert len(repo.waypoints(ride.id)) == 3

    def test_no_tracking_record_means_no_waypoint(self, session_maker, make_ride):
        ride = make_ride()
        with session_maker() as session:
            assert TrackingRepository(session).add_waypoint(ride.id, 4.85, 31.58, None, None, NOW) is None

    def test_end_stops_accumulation(self, session_maker, make_ride):
        ride = make_ride()
        with session_maker() as session:
            repo = TrackingRepository(session)
            repo.start(ride.id, NOW)
            repo.add_waypoint(ride.id, 4.85, 31.58, None, None, NOW)
            repo.add_waypoint(ride.id, 4.86, 31.58, None, None, NOW)
            distance = repo.end(ride.id, "completed", NOW + timedelta(minutes=5))
            assert repo.add_waypoint(ride.id, 4.87, 31.58, None, None, NOW) is None
            session.commit()

        assert distance == pytest.approx(1.112, abs=0.005)

    def test_end_without_tracking_is_zero(self, session_maker, make_ride):
        ride = make_ride()
        with session_maker() as session:
            assert TrackingRepository(session).end(ride.id, "cancelled", NOW) == 0.0
