"""Last-known driver locations kept in the Ledger.

These rows back two things: the busy flag (``current_ride_id``), written in
the same transaction as ride acceptance, and the bounding-box candidate scan
used when the real-time GeoIndex is unavailable.
"""

from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ridedispatch.core.exceptions import DriverAlreadyAssigned, NotFoundError
from ridedispatch.geo.distance import bounding_box, haversine_distance_km
from ridedispatch.geo.index import DriverLocation as DriverLocationDomain
from ridedispatch.geo.index import NearbyDriver

from ..schema import DriverLocation


class DriverLocationRepository:
    def __init__(self, session: Session):
        self.session = session

    def upsert(
        self,
        driver_id: str,
        lat: float,
        lon: float,
        heading: float | None,
        speed: float | None,
        now: datetime,
    ) -> DriverLocationDomain:
        """Record a heartbeat. A first heartbeat brings the driver online and available."""
        row = self.session.get(DriverLocation, driver_id)
        if row is None:
            row = DriverLocation(
                driver_id=driver_id,
                lat=lat,
                lon=lon,
                heading=heading,
                speed=speed,
                is_available=True,
                is_online=True,
                current_ride_id=None,
                last_updated=now,
            )
            self.session.add(row)
        else:
            row.lat = lat
            row.lon = lon
            row.heading = heading
            row.speed = speed
            row.last_updated = now
        self.session.flush()
        return self._to_domain(row)

    def get(self, driver_id: str) -> DriverLocationDomain | None:
        row = self.session.get(DriverLocation, driver_id)
        return self._to_domain(row) if row else None

    def busy_among(self, driver_ids: list[str]) -> set[str]:
        """Drivers the Ledger marks as holding a ride, whatever the GeoIndex says."""
        if not driver_ids:
            return set()
        stmt = select(DriverLocation.driver_id).where(
            DriverLocation.driver_id.in_(driver_ids),
            DriverLocation.current_ride_id.is_not(None),
        )
        return set(self.session.execute(stmt).scalars().all())

    def set_availability(self, driver_id: str, available: bool, now: datetime) -> DriverLocationDomain:
        row = self._require(driver_id)
        if available and row.current_ride_id is not None:
            raise DriverAlreadyAssigned(
                f"Driver {driver_id} has an active ride",
                {"driver_id": driver_id, "ride_id": row.current_ride_id},
            )
        row.is_available = available
        if available:
            row.is_online = True
        row.last_updated = now
        self.session.flush()
        return self._to_domain(row)

    def set_online(self, driver_id: str, online: bool, now: datetime) -> DriverLocationDomain:
        row = self._require(driver_id)
        row.is_online = online
        if not online:
            row.is_available = False
        row.last_updated = now
        self.session.flush()
        return self._to_domain(row)

    def assign_ride(self, driver_id: str, ride_id: int, now: datetime) -> None:
        """Set the busy flag, guarded so a driver can never hold two rides.

        Raises:
            NotFoundError: If the driver has never reported a location
            DriverAlreadyAssigned: If the driver already holds another ride
        """
        row = self.session.execute(
            select(DriverLocation)
            .where(DriverLocation.driver_id == driver_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"Driver {driver_id} has no location", {"driver_id": driver_id})

        result = self.session.execute(
            update(DriverLocation)
            .where(
                DriverLocation.driver_id == driver_id,
                DriverLocation.current_ride_id.is_(None),
            )
            .values(current_ride_id=ride_id, is_available=False, last_updated=now)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise DriverAlreadyAssigned(
                f"Driver {driver_id} is already assigned to ride {row.current_ride_id}",
                {"driver_id": driver_id, "ride_id": row.current_ride_id},
            )

    def clear_ride(self, driver_id: str, ride_id: int, now: datetime) -> bool:
        """Clear the busy flag if it still points at ride_id; online drivers become available."""
        row = self.session.get(DriverLocation, driver_id)
        if row is None or row.current_ride_id != ride_id:
            return False
        row.current_ride_id = None
        row.is_available = row.is_online
        row.last_updated = now
        self.session.flush()
        return True

    def find_in_bounding_box(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        limit: int,
        now: datetime,
        staleness_seconds: int,
    ) -> list[NearbyDriver]:
        """Degraded candidate search: box pre-filter in SQL, Haversine radius in memory."""
        min_lat, max_lat, min_lon, max_lon = bounding_box(lat, lon, radius_km)
        cutoff = now - timedelta(seconds=staleness_seconds)
        stmt = select(DriverLocation).where(
            DriverLocation.lat.between(min_lat, max_lat),
            DriverLocation.lon.between(min_lon, max_lon),
            DriverLocation.is_available.is_(True),
            DriverLocation.is_online.is_(True),
            DriverLocation.current_ride_id.is_(None),
            DriverLocation.last_updated >= cutoff,
        )

        results: list[NearbyDriver] = []
        for row in self.session.execute(stmt).scalars().all():
            distance = haversine_distance_km(lat, lon, row.lat, row.lon)
            if distance <= radius_km:
                results.append(NearbyDriver(self._to_domain(row), distance))
        results.sort(key=lambda c: (c.distance_km, c.location.driver_id))
        return results[:limit]

    def _require(self, driver_id: str) -> DriverLocation:
        row = self.session.get(DriverLocation, driver_id)
        if row is None:
            raise NotFoundError(f"Driver {driver_id} has no location", {"driver_id": driver_id})
        return row

    @staticmethod
    def _to_domain(row: DriverLocation) -> DriverLocationDomain:
        return DriverLocationDomain(
            driver_id=row.driver_id,
            lat=row.lat,
            lon=row.lon,
            heading=row.heading,
            speed=row.speed,
            is_available=row.is_available,
            is_online=row.is_online,
            current_ride_id=row.current_ride_id,
            last_updated=row.last_updated,
        )
