"""Redis GEO backed driver index, shared across service instances."""

import logging
from datetime import datetime, timedelta
from typing import Any

import redis
from opentelemetry import trace
from redis.exceptions import RedisError

from ridedispatch.core.exceptions import DependencyUnavailable
from ridedispatch.metrics import observe_store_latency

from .index import DriverLocation, NearbyDriver

logger = logging.getLogger(__name__)

_tracer = trace.get_tracer(__name__)


class RedisGeoIndex:
    """Positions live in a GEO sorted set; the rest of the record in one hash per driver."""

    def __init__(
        self,
        client: "redis.Redis[Any]",
        geo_key: str = "drivers:geo",
        staleness_seconds: int = 300,
    ):
        self._client = client
        self._geo_key = geo_key
        self._staleness = timedelta(seconds=staleness_seconds)

    def _hash_key(self, driver_id: str) -> str:
        return f"{self._geo_key}:driver:{driver_id}"

    def upsert_location(
        self,
        driver_id: str,
        lat: float,
        lon: float,
        heading: float | None,
        speed: float | None,
        now: datetime,
    ) -> DriverLocation:
        existing = self.get(driver_id)
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
            location = existing.model_copy(
                update={"lat": lat, "lon": lon, "heading": heading, "speed": speed, "last_updated": now}
            )
        self.put(location)
        return location

    def put(self, location: DriverLocation) -> None:
        with observe_store_latency("geo_index"):
            try:
                pipe = self._client.pipeline()
                pipe.geoadd(self._geo_key, (location.lon, location.lat, location.driver_id))
                pipe.hset(self._hash_key(location.driver_id), mapping=_to_hash(location))
                pipe.execute()
            except RedisError as e:
                raise DependencyUnavailable("geo_index", f"GEOADD failed: {e}") from e

    def set_availability(self, driver_id: str, available: bool, now: datetime) -> bool:
        return self._update(driver_id, is_available=available, last_updated=now)

    def set_online(self, driver_id: str, online: bool, now: datetime) -> bool:
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
        try:
            raw = self._client.hgetall(self._hash_key(driver_id))
        except RedisError as e:
            raise DependencyUnavailable("geo_index", f"HGETALL failed: {e}") from e
        if not raw:
            return None
        return _from_hash(driver_id, raw)

    def remove(self, driver_id: str) -> None:
        try:
            pipe = self._client.pipeline()
            pipe.zrem(self._geo_key, driver_id)
            pipe.delete(self._hash_key(driver_id))
            pipe.execute()
        except RedisError as e:
            raise DependencyUnavailable("geo_index", f"remove failed: {e}") from e

    def find_nearby(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        limit: int,
        now: datetime,
    ) -> list[NearbyDriver]:
        with _tracer.start_as_current_span("redis.geosearch") as span:
            span.set_attribute("db.system", "redis")
            span.set_attribute("geo.radius_km", radius_km)
            with observe_store_latency("geo_index"):
                try:
                    hits = self._client.geosearch(
                        self._geo_key,
                        longitude=lon,
                        latitude=lat,
                        radius=radius_km,
                        unit="km",
                        sort="ASC",
                        withdist=True,
                    )
                    pipe = self._client.pipeline()
                    for member, _ in hits:
                        pipe.hgetall(self._hash_key(member))
                    records = pipe.execute() if hits else []
                except RedisError as e:
                    span.record_exception(e)
                    raise DependencyUnavailable("geo_index", f"GEOSEARCH failed: {e}") from e

        results: list[NearbyDriver] = []
        for (member, distance), raw in zip(hits, records):
            if not raw:
                continue
            location = _from_hash(member, raw)
            if location.is_dispatchable(now, self._staleness):
                results.append(NearbyDriver(location, float(distance)))
            if len(results) >= limit:
                break
        return results

    def _update(self, driver_id: str, **changes: Any) -> bool:
        existing = self.get(driver_id)
        if existing is None:
            return False
        updated = existing.model_copy(update=changes)
        try:
            self._client.hset(self._hash_key(driver_id), mapping=_to_hash(updated))
        except RedisError as e:
            raise DependencyUnavailable("geo_index", f"HSET failed: {e}") from e
        return True


def _to_hash(location: DriverLocation) -> dict[str, str]:
    return {
        "lat": repr(location.lat),
        "lon": repr(location.lon),
        "heading": "" if location.heading is None else repr(location.heading),
        "speed": "" if location.speed is None else repr(location.speed),
        "is_available": "1" if location.is_available else "0",
        "is_online": "1" if location.is_online else "0",
        "current_ride_id": "" if location.current_ride_id is None else str(location.current_ride_id),
        "last_updated": location.last_updated.isoformat(),
    }


def _from_hash(driver_id: str, raw: dict[str, str]) -> DriverLocation:
    return DriverLocation(
        driver_id=driver_id,
        lat=float(raw["lat"]),
        lon=float(raw["lon"]),
        heading=float(raw["heading"]) if raw.get("heading") else None,
        speed=float(raw["speed"]) if raw.get("speed") else None,
        is_available=raw.get("is_available") == "1",
        is_online=raw.get("is_online") == "1",
        current_ride_id=int(raw["current_ride_id"]) if raw.get("current_ride_id") else None,
        last_updated=datetime.fromisoformat(raw["last_updated"]),
    )
