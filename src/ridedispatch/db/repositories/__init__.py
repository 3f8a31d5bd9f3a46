from .driver_location_repository import DriverLocationRepository
from .ride_repository import RideRepository
from .ride_request_repository import RideRequestRepository
from .tracking_repository import TrackingRepository

__all__ = [
    "DriverLocationRepository",
    "RideRepository",
    "RideRequestRepository",
    "TrackingRepository",
]
