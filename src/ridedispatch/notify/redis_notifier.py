"""Redis pub/sub notifier for connected rider and driver clients."""

import logging
from typing import Any

import redis
from opentelemetry import trace
from pydantic import BaseModel
from redis.exceptions import RedisError

from ridedispatch.db.utils import utc_now
from ridedispatch.dispatch_logging import get_current_correlation_id
from ridedispatch.fare import FareBreakdown
from ridedispatch.metrics import observe_store_latency
from ridedispatch.ride import Ride, RideStatus

from .channels import (
    ALL_CHANNELS,
    CHANNEL_RIDE_REQUESTS,
    CHANNEL_RIDE_UPDATES,
    RideRequestMessage,
    RideTakenMessage,
    RideUpdateMessage,
)
from .notifier import DriverSummary

logger = logging.getLogger(__name__)

_tracer = trace.get_tracer(__name__)


class RedisRideNotifier:
    """Publishes ride events as JSON on fixed channels.

    Subscribers (the socket gateway) route each message to the rider or the
    listed drivers; this class only knows channels, not connections.
    """

    def __init__(self, redis_client: "redis.Redis[Any]"):
        self._client = redis_client

    def publish_sync(self, channel: str, message: BaseModel) -> None:
        if channel not in ALL_CHANNELS:
            raise ValueError(
                f"Channel '{channel}' is not a valid channel. Valid channels: {ALL_CHANNELS}"
            )

        with _tracer.start_as_current_span("redis.publish") as span:
            span.set_attribute("db.system", "redis")
            span.set_attribute("db.redis.channel", channel)

            correlation_id = get_current_correlation_id()
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)

            with observe_store_latency("pubsub"):
                try:
                    self._client.publish(channel, message.model_dump_json())
                except RedisError as e:
                    span.record_exception(e)
                    logger.error(f"Failed to publish to channel {channel}: {e}")

    def notify_drivers_of_request(
        self, driver_ids: list[str], ride: Ride, fare: FareBreakdown | None, ttl_seconds: int
    ) -> None:
        self.publish_sync(
            CHANNEL_RIDE_REQUESTS,
            RideRequestMessage(
                ride_id=ride.id,
                ride_uuid=ride.uuid,
                driver_ids=driver_ids,
                ride_type=ride.ride_type.value,
                pickup=ride.pickup.point,
                pickup_address=ride.pickup.address,
                dropoff=ride.dropoff.point,
                dropoff_address=ride.dropoff.address,
                estimated_fare=fare.total if fare else ride.estimated_fare,
                currency=fare.currency if fare else None,
                expires_in_seconds=ttl_seconds,
                timestamp=utc_now().isoformat(),
            ),
        )

    def notify_rider_of_acceptance(self, ride: Ride, driver: DriverSummary | None) -> None:
        self.publish_sync(
            CHANNEL_RIDE_UPDATES,
            self._update("ride.accepted", ride, driver=driver.model_dump() if driver else None),
        )

    def notify_ride_taken(self, ride_id: int, loser_driver_ids: list[str]) -> None:
        self.publish_sync(
            CHANNEL_RIDE_REQUESTS,
            RideTakenMessage(
                ride_id=ride_id, driver_ids=loser_driver_ids, timestamp=utc_now().isoformat()
            ),
        )

    def notify_status_changed(self, ride: Ride, new_status: RideStatus) -> None:
        self.publish_sync(CHANNEL_RIDE_UPDATES, self._update(f"ride.{new_status.value}", ride))

    def notify_cancelled(self, ride: Ride, cancelled_by: str, reason: str | None) -> None:
        self.publish_sync(
            CHANNEL_RIDE_UPDATES,
            self._update("ride.cancelled", ride, cancelled_by=cancelled_by, reason=reason),
        )

    def notify_rider_searching(self, ride: Ride, drivers_notified: int) -> None:
        self.publish_sync(
            CHANNEL_RIDE_UPDATES,
            self._update("ride.searching", ride, drivers_notified=drivers_notified),
        )

    def notify_no_drivers(self, ride: Ride) -> None:
        self.publish_sync(CHANNEL_RIDE_UPDATES, self._update("ride.no_drivers", ride))

    @staticmethod
    def _update(event: str, ride: Ride, **extra: Any) -> RideUpdateMessage:
        return RideUpdateMessage(
            event=event,
            ride_id=ride.id,
            ride_uuid=ride.uuid,
            status=ride.status.value,
            rider_id=ride.rider_id,
            driver_id=ride.driver_id,
            timestamp=utc_now().isoformat(),
            **extra,
        )

    def close(self) -> None:
        self._client.close()
