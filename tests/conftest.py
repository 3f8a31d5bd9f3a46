from datetime import datetime
from unittest.mock import Mock

import pytest

from ridedispatch.cache.coordination import InMemoryCoordinationCache
from ridedispatch.core.retry import RetryConfig
from ridedispatch.db.database import init_database
from ridedispatch.db.repositories import RideRepository
from ridedispatch.fare import FareEngine, RideType
from ridedispatch.geo.index import DriverGeospatialIndex
from ridedispatch.matching.engine import MatchingEngine
from ridedispatch.ride import Location, Ride
from ridedispatch.rides import RideService
from ridedispatch.settings import DispatchSettings, FareSettings
from ridedispatch.tracking import LocationTracker

# 14:00 local time in the dry season: standard band, no seasonal multiplier.
NOW = datetime(2024, 1, 15, 12, 0, 0)

# Juba city centre and a point about 2.2 km north-east of it.
PICKUP = Location(lat=4.8517, lon=31.5825, address="Juba Town")
DROPOFF = Location(lat=4.8650, lon=31.5990, address="Hai Cinema")


class FakeClock:
    """Monotonic clock stand-in for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def session_maker(tmp_path):
    """File-backed SQLite Ledger so threads share one database."""
    return init_database(f"sqlite:///{tmp_path / 'ledger.db'}", timeout_seconds=10.0)


@pytest.fixture
def dispatch_settings() -> DispatchSettings:
    return DispatchSettings()


@pytest.fixture
def fare_engine() -> FareEngine:
    return FareEngine(FareSettings())


@pytest.fixture
def geo_index() -> DriverGeospatialIndex:
    return DriverGeospatialIndex()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> InMemoryCoordinationCache:
    return InMemoryCoordinationCache(clock=clock)


@pytest.fixture
def notifier():
    """Mock notifier; every notify_* call is recorded."""
    return Mock()


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=2, base_delay=0.0)


@pytest.fixture
def engine(session_maker, geo_index, cache, notifier, dispatch_settings, retry_config):
    return MatchingEngine(
        session_maker,
        geo_index,
        cache,
        notifier,
        dispatch_settings,
        retry_config=retry_config,
    )


@pytest.fixture
def tracker(session_maker, geo_index, dispatch_settings):
    return LocationTracker(session_maker, geo_index, dispatch_settings)


@pytest.fixture
def service(
    session_maker,
    engine,
    fare_engine,
    geo_index,
    cache,
    notifier,
    dispatch_settings,
    retry_config,
):
    return RideService(
        session_maker,
        engine,
        fare_engine,
        geo_index,
        cache,
        notifier,
        dispatch_settings,
        retry_config,
    )


@pytest.fixture
def make_ride(session_maker, fare_engine):
    """Persist a REQUESTED ride without dispatching it."""

    def _make(
        rider_id: str = "rider-1",
        pickup: Location = PICKUP,
        dropoff: Location = DROPOFF,
        requested_at: datetime = NOW,
        ride_type: RideType = RideType.STANDARD,
    ) -> Ride:
        fare = fare_engine.quote(2.5, 225, ride_type, 1.0, now=requested_at)
        with session_maker() as session:
            ride = RideRepository(session).create(
                rider_id, pickup, dropoff, ride_type, fare, 2.5, 225, requested_at
            )
            session.commit()
        return ride

    return _make


@pytest.fixture
def place_driver(tracker):
    """Report a driver heartbeat, which registers it in the Ledger and the GeoIndex."""

    def _place(driver_id: str, lat: float, lon: float, at: datetime = NOW):
        return tracker.on_driver_location_update(driver_id, lat, lon, 90.0, 0.0, at).location

    return _place
