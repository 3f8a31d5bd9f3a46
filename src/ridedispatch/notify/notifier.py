"""Notifier interface the core uses to reach riders and drivers.

Delivery is fire-and-forget: the core never retries a notification and a
failing notifier never fails the operation that triggered it.
"""

import logging
from collections.abc import Callable
from typing import Protocol

from pydantic import BaseModel

from ridedispatch.fare import FareBreakdown
from ridedispatch.metrics import notifier_failures
from ridedispatch.ride import Ride, RideStatus

logger = logging.getLogger(__name__)


class DriverSummary(BaseModel):
    driver_id: str
    lat: float
    lon: float
    heading: float | None = None
    distance_km: float | None = None
    eta_seconds: int | None = None


class RideNotifier(Protocol):
    def notify_drivers_of_request(
        self, driver_ids: list[str], ride: Ride, fare: FareBreakdown | None, ttl_seconds: int
    ) -> None: ...

    def notify_rider_of_acceptance(self, ride: Ride, driver: DriverSummary | None) -> None: ...

    def notify_ride_taken(self, ride_id: int, loser_driver_ids: list[str]) -> None: ...

    def notify_status_changed(self, ride: Ride, new_status: RideStatus) -> None: ...

    def notify_cancelled(self, ride: Ride, cancelled_by: str, reason: str | None) -> None: ...

    def notify_rider_searching(self, ride: Ride, drivers_notified: int) -> None: ...

    def notify_no_drivers(self, ride: Ride) -> None: ...


class LoggingNotifier:
    """Notifier that only logs; used when no real-time transport is configured."""

    def notify_drivers_of_request(
        self, driver_ids: list[str], ride: Ride, fare: FareBreakdown | None, ttl_seconds: int
    ) -> None:
        logger.info(
            f"Ride {ride.id} offered to {len(driver_ids)} drivers "
            f"(expires in {ttl_seconds}s)"
        )

    def notify_rider_of_acceptance(self, ride: Ride, driver: DriverSummary | None) -> None:
        logger.info(f"Ride {ride.id} accepted by driver {ride.driver_id}")

    def notify_ride_taken(self, ride_id: int, loser_driver_ids: list[str]) -> None:
        logger.info(f"Ride {ride_id} taken; informing {len(loser_driver_ids)} drivers")

    def notify_status_changed(self, ride: Ride, new_status: RideStatus) -> None:
        logger.info(f"Ride {ride.id} is now {new_status.value}")

    def notify_cancelled(self, ride: Ride, cancelled_by: str, reason: str | None) -> None:
        logger.info(f"Ride {ride.id} cancelled by {cancelled_by}: {reason or 'no reason'}")

    def notify_rider_searching(self, ride: Ride, drivers_notified: int) -> None:
        logger.info(f"Ride {ride.id}: searching, {drivers_notified} drivers notified")

    def notify_no_drivers(self, ride: Ride) -> None:
        logger.info(f"No drivers available for ride {ride.id}")


class SafeNotifier:
    """Wraps any RideNotifier so delivery failures are logged and counted, never raised."""

    def __init__(self, inner: RideNotifier):
        self._inner = inner

    def notify_drivers_of_request(
        self, driver_ids: list[str], ride: Ride, fare: FareBreakdown | None, ttl_seconds: int
    ) -> None:
        self._deliver(
            "drivers_of_request",
            lambda: self._inner.notify_drivers_of_request(driver_ids, ride, fare, ttl_seconds),
        )

    def notify_rider_of_acceptance(self, ride: Ride, driver: DriverSummary | None) -> None:
        self._deliver(
            "rider_of_acceptance", lambda: self._inner.notify_rider_of_acceptance(ride, driver)
        )

    def notify_ride_taken(self, ride_id: int, loser_driver_ids: list[str]) -> None:
        if not loser_driver_ids:
            return
        self._deliver(
            "ride_taken", lambda: self._inner.notify_ride_taken(ride_id, loser_driver_ids)
        )

    def notify_status_changed(self, ride: Ride, new_status: RideStatus) -> None:
        self._deliver(
            "status_changed", lambda: self._inner.notify_status_changed(ride, new_status)
        )

    def notify_cancelled(self, ride: Ride, cancelled_by: str, reason: str | None) -> None:
        self._deliver(
            "cancelled", lambda: self._inner.notify_cancelled(ride, cancelled_by, reason)
        )

    def notify_rider_searching(self, ride: Ride, drivers_notified: int) -> None:
        self._deliver(
            "rider_searching", lambda: self._inner.notify_rider_searching(ride, drivers_notified)
        )

    def notify_no_drivers(self, ride: Ride) -> None:
        self._deliver("no_drivers", lambda: self._inner.notify_no_drivers(ride))

    @staticmethod
    def _deliver(event: str, send: Callable[[], None]) -> None:
        try:
            send()
        except Exception:
            notifier_failures.labels(event=event).inc()
            logger.exception(f"Notifier failed for {event}; continuing")
