"""Wiring of the dispatch core from Settings."""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from ridedispatch.cache import (
    CoordinationCache,
    InMemoryCoordinationCache,
    RedisCoordinationCache,
    create_redis_client,
)
from ridedispatch.core.retry import RetryConfig
from ridedispatch.db.database import init_database_from_settings
from ridedispatch.dispatch_logging import setup_logging
from ridedispatch.fare import FareEngine
from ridedispatch.geo.index import DriverGeospatialIndex, GeoIndex
from ridedispatch.geo.redis_index import RedisGeoIndex
from ridedispatch.matching import MatchingEngine
from ridedispatch.notify import LoggingNotifier, RedisRideNotifier, RideNotifier
from ridedispatch.rides import RideService
from ridedispatch.settings import Settings, get_settings
from ridedispatch.tracking import LocationTracker

logger = logging.getLogger(__name__)


@dataclass
class DispatchComponents:
    settings: Settings
    session_factory: sessionmaker[Session]
    geo_index: GeoIndex
    cache: CoordinationCache
    notifier: RideNotifier
    fare_engine: FareEngine
    matching_engine: MatchingEngine
    ride_service: RideService
    location_tracker: LocationTracker
    redis_client: Any = None

    def close(self) -> None:
        if self.redis_client is not None:
            self.redis_client.close()
        bind = self.session_factory.kw.get("bind")
        if bind is not None:
            bind.dispose()


def create_components(
    settings: Settings | None = None,
    configure_logging: bool = True,
) -> DispatchComponents:
    """Build every collaborator from settings; Redis is only connected if a backend needs it."""
    settings = settings or get_settings()
    d = settings.dispatch

    if configure_logging:
        setup_logging(
            level=d.log_level,
            json_output=d.log_format == "json",
            environment=d.environment,
        )

    session_factory = init_database_from_settings(settings.database)

    uses_redis = "redis" in (d.geo_index_backend, d.coordination_backend, d.notifier_backend)
    redis_client = create_redis_client(settings.redis) if uses_redis else None

    geo_index: GeoIndex
    if d.geo_index_backend == "redis":
        geo_index = RedisGeoIndex(redis_client, settings.redis.geo_key, d.location_staleness_seconds)
    else:
        geo_index = DriverGeospatialIndex(d.h3_resolution, d.location_staleness_seconds)

    cache: CoordinationCache
    if d.coordination_backend == "redis":
        cache = RedisCoordinationCache(redis_client, settings.redis.key_prefix)
    else:
        cache = InMemoryCoordinationCache(settings.redis.key_prefix)

    notifier: RideNotifier
    if d.notifier_backend == "redis":
        notifier = RedisRideNotifier(redis_client)
    else:
        notifier = LoggingNotifier()

    retry_config = RetryConfig.from_settings(settings.retry)
    fare_engine = FareEngine(settings.fare, d.average_speed_kmh)
    matching_engine = MatchingEngine(
        session_factory, geo_index, cache, notifier, d, retry_config=retry_config
    )
    ride_service = RideService(
        session_factory,
        matching_engine,
        fare_engine,
        geo_index,
        cache,
        notifier,
        d,
        retry_config,
    )
    location_tracker = LocationTracker(session_factory, geo_index, d)

    logger.info(
        f"Dispatch core ready: geo={d.geo_index_backend} cache={d.coordination_backend} "
        f"notifier={d.notifier_backend}"
    )
    return DispatchComponents(
        settings=settings,
        session_factory=session_factory,
        geo_index=geo_index,
        cache=cache,
        notifier=notifier,
        fare_engine=fare_engine,
        matching_engine=matching_engine,
        ride_service=ride_service,
        location_tracker=location_tracker,
        redis_client=redis_client,
    )
