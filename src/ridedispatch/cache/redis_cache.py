"""Redis-backed coordination cache."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import redis
from redis.exceptions import RedisError

from ridedispatch.core.exceptions import DependencyUnavailable
from ridedispatch.metrics import observe_store_latency
from ridedispatch.settings import RedisSettings

from .coordination import CacheKeys, request_is_live, request_value

logger = logging.getLogger(__name__)


def create_redis_client(settings: RedisSettings) -> "redis.Redis[Any]":
    """Client whose every call is bounded by the configured socket timeout."""
    return redis.Redis(
        host=settings.host,
        port=settings.port,
        db=settings.db,
        password=settings.password or None,
        ssl=settings.ssl,
        socket_timeout=settings.socket_timeout_seconds,
        socket_connect_timeout=settings.socket_timeout_seconds,
        decode_responses=True,
    )


class RedisCoordinationCache:
    """Request mirror and claim markers using SET NX EX.

    Claims are atomic check-and-mark in one round trip, so concurrent callers
    on different instances see exactly one winner per marker.
    """

    def __init__(self, redis_client: "redis.Redis[Any]", key_prefix: str = "ride:requests:"):
        self._redis = redis_client
        self._keys = CacheKeys(key_prefix)

    def put_requests(
        self,
        ride_id: int,
        driver_ids: list[str],
        ttl_seconds: int,
        expires_at: datetime | None = None,
    ) -> None:
        value = request_value(expires_at)
        with observe_store_latency("coordination_cache"), self._translate("put_requests"):
            pipe = self._redis.pipeline()
            for driver_id in driver_ids:
                pipe.set(self._keys.request(ride_id, driver_id), value, ex=ttl_seconds)
            pipe.set(self._keys.ride(ride_id), ",".join(driver_ids), ex=ttl_seconds)
            pipe.execute()

    def has_request(self, ride_id: int, driver_id: str, now: datetime | None = None) -> bool:
        with observe_store_latency("coordination_cache"), self._translate("has_request"):
            value = self._redis.get(self._keys.request(ride_id, driver_id))
        return request_is_live(value, now)

    def ride_drivers(self, ride_id: int) -> list[str] | None:
        with self._translate("ride_drivers"):
            value = self._redis.get(self._keys.ride(ride_id))
        if value is None:
            return None
        return [d for d in value.split(",") if d]

    def drop_request(self, ride_id: int, driver_id: str) -> None:
        with observe_store_latency("coordination_cache"), self._translate("drop_request"):
            self._redis.delete(self._keys.request(ride_id, driver_id))

    def clear_ride(self, ride_id: int) -> None:
        with observe_store_latency("coordination_cache"), self._translate("clear_ride"):
            driver_ids = self._redis.get(self._keys.ride(ride_id))
            keys = [self._keys.ride(ride_id)]
            if driver_ids:
                keys.extend(
                    self._keys.request(ride_id, d) for d in driver_ids.split(",") if d
                )
            self._redis.delete(*keys)

    def claim(self, name: str, owner: str, ttl_seconds: int) -> bool:
        with observe_store_latency("coordination_cache"), self._translate("claim"):
            was_set = self._redis.set(self._keys.marker(name), owner, nx=True, ex=ttl_seconds)
        if not was_set:
            logger.debug(f"Claim {name} already held")
        return bool(was_set)

    def holder(self, name: str) -> str | None:
        with self._translate("holder"):
            value = self._redis.get(self._keys.marker(name))
        return value

    @staticmethod
    @contextmanager
    def _translate(operation: str) -> Iterator[None]:
        """Turn RedisError, socket timeouts included, into DependencyUnavailable."""
        try:
            yield
        except RedisError as e:
            raise DependencyUnavailable(
                "coordination_cache", f"Redis {operation} failed: {e}"
            ) from e
