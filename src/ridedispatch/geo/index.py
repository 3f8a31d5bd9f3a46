"""Real-time driver location index.

The index is an eventually-consistent secondary copy of driver state: the
Ledger stays authoritative for who is busy, and every location heartbeat
rewrites the driver's entry, which is how stale ``current_ride_id`` values
heal. ``find_nearby`` returns a snapshot; it is not serialized against
concurrent writers.
"""

import threading
from datetime import datetime, timedelta
from typing import NamedTuple, Protocol

import h3
from pydantic import BaseModel, ConfigDict

from .distance import haversine_distance_km


class DriverLocation(BaseModel):
    """Last known position and availability of one driver."""

    model_config = ConfigDict(frozen=True)

    driver_id: str
    lat: float
    lon: float
    heading: float | None = None
    speed: float | None = None
    is_available: bool = True
    is_online: bool = True
    current_ride_id: int | None = None
    last_updated: datetime

    @property
    def position(self) -> tuple[float, float]:
        return (self.lat, self.lon)

    def is_dispatchable(self, now: datetime, staleness: timedelta) -> bool:
        return (
            self.is_available
            and self.is_online
            and self.current_ride_id is None
            and self.last_updated >= now - staleness
        )


class NearbyDriver(NamedTuple):
    location: DriverLocation
    distance_km: float


class GeoIndex(Protocol):
    """Driver position store with nearest-neighbour search."""

    def upsert_location(
        self,
        driver_id: str,
        lat: float,
        lon: float,
        heading: float | None,
        speed: float | None,
        now: datetime,
    ) -> DriverLocation: ...

    def put(self, location: DriverLocation) -> None: ...

    def set_availability(self, driver_id: str, available: bool, now: datetime) -> bool: ...

    def set_online(self, driver_id: str, online: bool, now: datetime) -> bool: ...

    def assign_ride(self, driver_id: str, ride_id: int, now: datetime) -> bool: ...

    def clear_ride(self, driver_id: str, now: datetime) -> bool: ...

    def get(self, driver_id: str) -> DriverLocation | None: ...

    def remove(self, driver_id: str) -> None: ...

    def find_nearby(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        limit: int,
        now: datetime,
    ) -> list[NearbyDriver]: ...


class DriverGeospatialIndex:
    """In-process spatial index for driver locations using H3 hexagonal cells."""

    def __init__(self, h3_resolution: int = 9, staleness_seconds: int = 300):
        self._h3_resolution = h3_resolution
        self._staleness = timedelta(seconds=staleness_seconds)
        self._h3_cells: dict[str, set[str]] = {}
        self._drivers: dict[str, tuple[DriverLocation, str]] = {}
        self._lock = threading.Lock()
        # Approximate H3 edge length in meters at the configured resolution.
        self._edge_m = h3.average_hexagon_edge_length(h3_resolution, unit="m")

    def upsert_location(
        self,
        driver_id: str,
        lat: float,
        lon: float,
        heading: float | None,
        speed: float | None,
        now: datetime,
    ) -> DriverLocation:
        with self._lock:
            new_cell = self._get_h3_cell(lat, lon)
            existing = self._drivers.get(driver_id)

            if existing is None:
                location = DriverLocation(
                    driver_id=driver_id,
                    lat=lat,
                    lon=lon,
                    heading=heading,
                    speed=speed,
                    last_updated=now,
                )
            else:
                previous, old_cell = existing
                location = previous.model_copy(
                    update={
                        "lat": lat,
                        "lon": lon,
                        "heading": heading,
                        "speed": speed,
                        "last_updated": now,
                    }
                )
                if old_cell != new_cell:
                    self._discard_from_cell(driver_id, old_cell)

            self._h3_cells.setdefault(new_cell, set()).add(driver_id)
            self._drivers[driver_id] = (location, new_cell)
            return location

    def put(self, location: DriverLocation) -> None:
        """Replace a driver's whole entry, e.g. when reconciling from the Ledger."""
        with self._lock:
            existing = self._drivers.get(location.driver_id)
            new_cell = self._get_h3_cell(location.lat, location.lon)
            if existing is not None and existing[1] != new_cell:
                self._discard_from_cell(location.driver_id, existing[1])
            self._h3_cells.setdefault(new_cell, set()).add(location.driver_id)
            self._drivers[location.driver_id] = (location, new_cell)

    def set_availability(self, driver_id: str, available: bool, now: datetime) -> bool:
        return self._update(driver_id, is_available=available, last_updated=now)

    def set_online(self, driver_id: str, online: bool, now: datetime) -> bool:
        # Going offline also makes the driver unavailable.
        if online:
            return self._update(driver_id, is_online=True, last_updated=now)
        return self._update(driver_id, is_online=False, is_available=False, last_updated=now)

    def assign_ride(self, driver_id: str, ride_id: int, now: datetime) -> bool:
        return self._update(
            driver_id, current_ride_id=ride_id, is_available=False, last_updated=now
        )

    def clear_ride(self, driver_id: str, now: datetime) -> bool:
        return self._update(driver_id, current_ride_id=None, is_available=True, last_updated=now)

    def get(self, driver_id: str) -> DriverLocation | None:
        with self._lock:
            entry = self._drivers.get(driver_id)
            return entry[0] if entry else None

    def remove(self, driver_id: str) -> None:
        with self._lock:
            entry = self._drivers.pop(driver_id, None)
            if entry is not None:
                self._discard_from_cell(driver_id, entry[1])

    def find_nearby(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        limit: int,
        now: datetime,
    ) -> list[NearbyDriver]:
        with self._lock:
            if not self._drivers:
                return []

            center_cell = self._get_h3_cell(lat, lon)
            max_k = max(1, int(radius_km * 1000 / self._edge_m) + 1)

            candidates: list[NearbyDriver] = []
            checked_cells: set[str] = set()

            # Progressive ring expansion: start small, double outward until the
            # radius is covered or enough candidates are in hand.
            k = 5
            while True:
                current_k = min(k, max_k)
                ring_cells = set(h3.grid_disk(center_cell, current_k))
                new_cells = ring_cells - checked_cells
                checked_cells |= ring_cells

                for cell in new_cells:
                    for driver_id in self._h3_cells.get(cell, ()):
                        location, _ = self._drivers[driver_id]
                        if not location.is_dispatchable(now, self._staleness):
                            continue
                        distance = haversine_distance_km(lat, lon, location.lat, location.lon)
                        if distance <= radius_km:
                            candidates.append(NearbyDriver(location, distance))

                if current_k >= max_k:
                    break
                # Only candidates inside the fully covered disk are known to beat
                # anything in rings not yet scanned.
                covered_km = max(0, current_k - 2) * self._edge_m / 1000
                if sum(1 for c in candidates if c.distance_km <= covered_km) >= limit:
                    break

                k = k * 2

            # Sort by distance, then driver id so ties are stable across calls.
            candidates.sort(key=lambda c: (c.distance_km, c.location.driver_id))
            return candidates[:limit]

    def _update(self, driver_id: str, **changes: object) -> bool:
        with self._lock:
            entry = self._drivers.get(driver_id)
            if entry is None:
                return False
            location, cell = entry
            self._drivers[driver_id] = (location.model_copy(update=changes), cell)
            return True

    def _discard_from_cell(self, driver_id: str, cell: str) -> None:
        members = self._h3_cells.get(cell)
        if members is None:
            return
        members.discard(driver_id)
        if not members:
            del self._h3_cells[cell]

    def _get_h3_cell(self, lat: float, lon: float) -> str:
        return h3.latlng_to_cell(lat, lon, self._h3_resolution)
