from .notifier import DriverSummary, LoggingNotifier, RideNotifier, SafeNotifier
from .redis_notifier import RedisRideNotifier

__all__ = [
    "DriverSummary",
    "LoggingNotifier",
    "RedisRideNotifier",
    "RideNotifier",
    "SafeNotifier",
]
