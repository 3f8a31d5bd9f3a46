"""Ride tracking: waypoint log and accumulated travelled distance."""

from datetime import datetime
from typing import Literal

from sqlalchemy import select
from sqlalchemy.orm import Session

from ridedispatch.geo.distance import haversine_distance_km

from ..schema import RideTracking, RideWaypoint

TrackingStatus = Literal["active", "completed", "cancelled"]


class TrackingRepository:
    def __init__(self, session: Session):
        self.session = session

    def start(self, ride_id: int, now: datetime) -> RideTracking:
        tracking = self.session.get(RideTracking, ride_id)
        if tracking is None:
            tracking = RideTracking(
                ride_id=ride_id,
                status="active",
                total_distance_km=0.0,
                waypoint_count=0,
                started_at=now,
            )
            self.session.add(tracking)
            self.session.flush()
        return tracking

    def get(self, ride_id: int) -> RideTracking | None:
        return self.session.get(RideTracking, ride_id)

    def add_waypoint(
        self,
        ride_id: int,
        lat: float,
        lon: float,
        heading: float | None,
        speed: float | None,
        now: datetime,
        source: str = "gps",
    ) -> float | None:
        """Append a waypoint and return the accumulated distance, or None if not tracking."""
        tracking = self.session.get(RideTracking, ride_id)
        if tracking is None or tracking.status != "active":
            return None

        if tracking.last_lat is not None and tracking.last_lon is not None:
            tracking.total_distance_km += haversine_distance_km(
                tracking.last_lat, tracking.last_lon, lat, lon
            )
        tracking.last_lat = lat
        tracking.last_lon = lon
        tracking.waypoint_count += 1

        self.session.add(
            RideWaypoint(
                ride_id=ride_id,
                lat=lat,
                lon=lon,
                heading=heading,
                speed=speed,
                source=source,
                recorded_at=now,
            )
        )
        self.session.flush()
        return tracking.total_distance_km

    def end(self, ride_id: int, status: TrackingStatus, now: datetime) -> float:
        """Close tracking and return the distance travelled in kilometers."""
        tracking = self.session.get(RideTracking, ride_id)
        if tracking is None:
            return 0.0
        if tracking.status == "active":
            tracking.status = status
            tracking.ended_at = now
            self.session.flush()
        return tracking.total_distance_km

    def waypoints(self, ride_id: int) -> list[RideWaypoint]:
        stmt = (
            select(RideWaypoint)
            .where(RideWaypoint.ride_id == ride_id)
            .order_by(RideWaypoint.recorded_at, RideWaypoint.id)
        )
        return list(self.session.execute(stmt).scalars().all())
