"""Inbound driver location heartbeats."""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session, sessionmaker

from ridedispatch.core.exceptions import DependencyUnavailable
from ridedispatch.db.repositories import (
    DriverLocationRepository,
    RideRepository,
    TrackingRepository,
)
from ridedispatch.db.transaction import transaction
from ridedispatch.geo.distance import is_within_proximity
from ridedispatch.geo.index import DriverLocation, GeoIndex
from ridedispatch.ride import RideStatus
from ridedispatch.settings import DispatchSettings

logger = logging.getLogger(__name__)


@dataclass
class LocationUpdate:
    location: DriverLocation
    ride_id: int | None = None
    # Distance accumulated on the ride's tracking record, if it is being tracked
    ride_distance_km: float | None = None
    near_pickup: bool = False
    geo_index_synced: bool = True


class LocationTracker:
    """Feeds heartbeats to the Ledger, the ride's waypoint log and the GeoIndex.

    The Ledger row is written first and then copied whole into the GeoIndex,
    so a GeoIndex entry that missed an acceptance or completion is repaired
    by the driver's next heartbeat.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        geo_index: GeoIndex,
        settings: DispatchSettings | None = None,
    ):
        self._session_factory = session_factory
        self._geo_index = geo_index
        self._settings = settings or DispatchSettings()

    def on_driver_location_update(
        self,
        driver_id: str,
        lat: float,
        lon: float,
        heading: float | None,
        speed: float | None,
        now: datetime,
    ) -> LocationUpdate:
        near_pickup = False
        distance_km = None
        with self._session_factory() as session, transaction(session):
            location = DriverLocationRepository(session).upsert(
                driver_id, lat, lon, heading, speed, now
            )
            ride_id = location.current_ride_id
            if ride_id is not None:
                distance_km = TrackingRepository(session).add_waypoint(
                    ride_id, lat, lon, heading, speed, now
                )
                ride = RideRepository(session).get(ride_id)
                if ride is not None and ride.status == RideStatus.ACCEPTED:
                    near_pickup = is_within_proximity(
                        lat,
                        lon,
                        ride.pickup.lat,
                        ride.pickup.lon,
                        threshold_m=self._settings.arrival_threshold_km * 1000,
                    )

        synced = True
        try:
            self._geo_index.put(location)
        except DependencyUnavailable as e:
            logger.warning(f"GeoIndex missed heartbeat from driver {driver_id}: {e.message}")
            synced = False

        return LocationUpdate(
            location=location,
            ride_id=ride_id,
            ride_distance_km=distance_km,
            near_pickup=near_pickup,
            geo_index_synced=synced,
        )
