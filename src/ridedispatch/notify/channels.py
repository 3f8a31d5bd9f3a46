"""Pub/sub channel definitions and message schemas for real-time ride events."""

from pydantic import BaseModel

# Channel names
CHANNEL_RIDE_REQUESTS = "ride-requests"
CHANNEL_RIDE_UPDATES = "ride-updates"
CHANNEL_DRIVER_UPDATES = "driver-updates"

ALL_CHANNELS = [
    CHANNEL_RIDE_REQUESTS,
    CHANNEL_RIDE_UPDATES,
    CHANNEL_DRIVER_UPDATES,
]


class RideRequestMessage(BaseModel):
    """New ride opportunity fanned out to candidate drivers."""

    event: str = "ride.request"
    ride_id: int
    ride_uuid: str
    driver_ids: list[str]
    ride_type: str
    pickup: tuple[float, float]
    pickup_address: str | None
    dropoff: tuple[float, float]
    dropoff_address: str | None
    estimated_fare: int
    currency: str | None
    expires_in_seconds: int
    timestamp: str


class RideUpdateMessage(BaseModel):
    """Ride status change delivered to the rider (and assigned driver)."""

    event: str
    ride_id: int
    ride_uuid: str
    status: str
    rider_id: str
    driver_id: str | None
    driver: dict[str, object] | None = None
    cancelled_by: str | None = None
    reason: str | None = None
    drivers_notified: int | None = None
    timestamp: str


class RideTakenMessage(BaseModel):
    """Tells drivers who lost (or never answered) that a ride is gone."""

    event: str = "ride.taken"
    ride_id: int
    driver_ids: list[str]
    timestamp: str
