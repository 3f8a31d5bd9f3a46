"""Ephemeral coordination state for outstanding ride requests.

The cache mirrors PENDING requests with a TTL so "is this request still
live?" can be answered without a Ledger round trip, and holds short-lived
claim markers that stop duplicate work before it reaches the Ledger. It is
advisory only: every decision it short-circuits is re-checked, or would be
rejected, by the Ledger.
"""

import threading
import time
from collections.abc import Callable
from datetime import datetime
from typing import Protocol


class CoordinationCache(Protocol):
    def put_requests(
        self,
        ride_id: int,
        driver_ids: list[str],
        ttl_seconds: int,
        expires_at: datetime | None = None,
    ) -> None:
        """Mirror one (ride, driver) key per driver plus one umbrella key for the ride.

        expires_at is the request deadline on the caller's clock; it is stored
        as the key's value so lookups can be judged against the caller's ``now``.
        """
        ...

    def has_request(self, ride_id: int, driver_id: str, now: datetime | None = None) -> bool: ...

    def ride_drivers(self, ride_id: int) -> list[str] | None: ...

    def drop_request(self, ride_id: int, driver_id: str) -> None: ...

    def clear_ride(self, ride_id: int) -> None: ...

    def claim(self, name: str, owner: str, ttl_seconds: int) -> bool:
        """Atomically take a named marker; False if someone else holds it."""
        ...

    def holder(self, name: str) -> str | None: ...


class CacheKeys:
    """Key layout shared by every backend."""

    def __init__(self, prefix: str = "ride:requests:"):
        self.prefix = prefix

    def request(self, ride_id: int, driver_id: str) -> str:
        return f"{self.prefix}{ride_id}:{driver_id}"

    def ride(self, ride_id: int) -> str:
        return f"{self.prefix}{ride_id}"

    def marker(self, name: str) -> str:
        return f"{self.prefix}claim:{name}"


def accepted_marker(ride_id: int) -> str:
    return f"accepted:{ride_id}"


def request_value(expires_at: datetime | None) -> str:
    return expires_at.isoformat() if expires_at is not None else "pending"


def request_is_live(value: str | None, now: datetime | None) -> bool:
    """True if a mirrored request exists and its stored deadline has not passed at now."""
    if value is None:
        return False
    if now is None or value == "pending":
        return True
    return now <= datetime.fromisoformat(value)


class InMemoryCoordinationCache:
    """Single-process cache with TTL semantics, for tests and single-instance runs."""

    def __init__(
        self,
        key_prefix: str = "ride:requests:",
        clock: Callable[[], float] = time.monotonic,
    ):
        self._keys = CacheKeys(key_prefix)
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def put_requests(
        self,
        ride_id: int,
        driver_ids: list[str],
        ttl_seconds: int,
        expires_at: datetime | None = None,
    ) -> None:
        evict_at = self._clock() + ttl_seconds
        value = request_value(expires_at)
        with self._lock:
            self._prune()
            for driver_id in driver_ids:
                self._entries[self._keys.request(ride_id, driver_id)] = (value, evict_at)
            self._entries[self._keys.ride(ride_id)] = (",".join(driver_ids), evict_at)

    def has_request(self, ride_id: int, driver_id: str, now: datetime | None = None) -> bool:
        with self._lock:
            value = self._live(self._keys.request(ride_id, driver_id))
        return request_is_live(value, now)

    def ride_drivers(self, ride_id: int) -> list[str] | None:
        with self._lock:
            value = self._live(self._keys.ride(ride_id))
        if value is None:
            return None
        return [d for d in value.split(",") if d]

    def drop_request(self, ride_id: int, driver_id: str) -> None:
        with self._lock:
            self._entries.pop(self._keys.request(ride_id, driver_id), None)

    def clear_ride(self, ride_id: int) -> None:
        request_prefix = self._keys.request(ride_id, "")
        with self._lock:
            self._entries.pop(self._keys.ride(ride_id), None)
            for key in [k for k in self._entries if k.startswith(request_prefix)]:
                del self._entries[key]

    def claim(self, name: str, owner: str, ttl_seconds: int) -> bool:
        key = self._keys.marker(name)
        with self._lock:
            self._prune()
            if self._live(key) is not None:
                return False
            self._entries[key] = (owner, self._clock() + ttl_seconds)
            return True

    def holder(self, name: str) -> str | None:
        with self._lock:
            return self._live(self._keys.marker(name))

    def _live(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def _prune(self) -> None:
        now = self._clock()
        for key in [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]:
            del self._entries[key]
