"""Ride service: the rider- and driver-facing lifecycle around the matching engine."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from sqlalchemy.orm import Session, sessionmaker

from ridedispatch.cache.coordination import CoordinationCache
from ridedispatch.core.exceptions import (
    DependencyUnavailable,
    InvalidStatusTransition,
    RiderHasActiveRide,
    ValidationError,
)
from ridedispatch.core.retry import RetryConfig
from ridedispatch.db.repositories import (
    DriverLocationRepository,
    RideRepository,
    RideRequestRepository,
    TrackingRepository,
)
from ridedispatch.db.transaction import transaction
from ridedispatch.dispatch_logging import log_ride_context
from ridedispatch.fare import FareAdjustments, FareEngine, FareEstimate, RideType, RoadCondition
from ridedispatch.geo.distance import estimate_travel_seconds, haversine_distance_km
from ridedispatch.geo.index import DriverLocation, GeoIndex
from ridedispatch.matching.engine import DispatchResult, MatchingEngine, sync_geo_index
from ridedispatch.metrics import ride_transitions, rides_requested
from ridedispatch.notify.notifier import RideNotifier, SafeNotifier
from ridedispatch.ride import (
    ArrivingPayload,
    CancelledBy,
    CancelledPayload,
    CompletedPayload,
    Location,
    Ride,
    RideStatus,
    StartedPayload,
)
from ridedispatch.settings import DispatchSettings

logger = logging.getLogger(__name__)


@dataclass
class RideRequestOutcome:
    ride: Ride
    dispatch: DispatchResult


@dataclass
class RideHistoryPage:
    rides: list[Ride]
    total: int
    limit: int
    offset: int


class RideService:
    """Creates rides, drives them through their lifecycle and keeps driver state in step.

    Ledger writes happen in one transaction per call. GeoIndex and cache
    updates follow the commit and may fail without undoing it.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        matching_engine: MatchingEngine,
        fare_engine: FareEngine,
        geo_index: GeoIndex,
        cache: CoordinationCache,
        notifier: RideNotifier,
        settings: DispatchSettings | None = None,
        retry_config: RetryConfig | None = None,
    ):
        self._session_factory = session_factory
        self._matching = matching_engine
        self._fares = fare_engine
        self._geo_index = geo_index
        self._cache = cache
        self._notifier = SafeNotifier(notifier)
        self._settings = settings or DispatchSettings()
        self._retry_config = retry_config or RetryConfig()

    def request_ride(
        self,
        rider_id: str,
        pickup: Location,
        dropoff: Location,
        ride_type: RideType | str,
        now: datetime,
        surge_multiplier: float | None = None,
        road_condition: RoadCondition | str = RoadCondition.PAVED,
    ) -> RideRequestOutcome:
        """Quote, persist and dispatch a new ride.

        Raises:
            RiderHasActiveRide: If the rider already has a ride in progress
            ValidationError: If the ride type, road condition or surge is invalid
        """
        if not rider_id:
            raise ValidationError("rider_id is required")

        distance_km = haversine_distance_km(pickup.lat, pickup.lon, dropoff.lat, dropoff.lon)
        duration_sec = estimate_travel_seconds(distance_km, self._settings.average_speed_kmh)
        fare = self._fares.quote(
            distance_km,
            duration_sec,
            ride_type,
            surge_multiplier,
            road_condition,
            now=now,
            location=pickup.point,
        )

        with self._session_factory() as session, transaction(session):
            rides = RideRepository(session)
            active = rides.find_active_by_rider(rider_id)
            if active is not None:
                raise RiderHasActiveRide(
                    f"Rider {rider_id} already has an active ride",
                    {"rider_id": rider_id, "ride_id": active.id, "status": active.status.value},
                )
            ride = rides.create(
                rider_id, pickup, dropoff, RideType(ride_type), fare, distance_km, duration_sec, now
            )

        rides_requested.labels(ride_type=ride.ride_type.value).inc()
        with log_ride_context(ride.id, rider_id=rider_id):
            logger.info(
                f"Ride requested: {distance_km:.2f} km, fare {self._fares.format_fare(fare.total)}"
            )
        dispatch = self._matching.match_and_dispatch(ride, now)
        return RideRequestOutcome(ride=ride, dispatch=dispatch)

    def estimate_fare(
        self,
        pickup: Location,
        dropoff: Location,
        ride_type: RideType | str,
        now: datetime,
    ) -> FareEstimate:
        return self._fares.estimate(pickup.point, dropoff.point, ride_type, now=now)

    def mark_arriving(self, ride_id: int, driver_id: str, now: datetime) -> Ride:
        with self._session_factory() as session, transaction(session):
            rides = RideRepository(session)
            self._require_driver(rides.lock(ride_id), driver_id)
            ride = rides.apply_transition(ride_id, ArrivingPayload(), now)
        return self._after_transition(ride)

    def start_ride(self, ride_id: int, driver_id: str, now: datetime) -> Ride:
        with self._session_factory() as session, transaction(session):
            rides = RideRepository(session)
            self._require_driver(rides.lock(ride_id), driver_id)
            ride = rides.apply_transition(ride_id, StartedPayload(), now)
            TrackingRepository(session).start(ride_id, now)
        return self._after_transition(ride)

    def complete_ride(
        self,
        ride_id: int,
        driver_id: str,
        now: datetime,
        road_condition: RoadCondition | str = RoadCondition.PAVED,
        adjustments: FareAdjustments | None = None,
    ) -> Ride:
        """Finish an IN_PROGRESS ride and price it from what was actually driven.

        Distance comes from the waypoint log; a ride without waypoints falls
        back to the straight-line estimate made at request time.
        """
        with self._session_factory() as session, transaction(session):
            rides = RideRepository(session)
            current = rides.lock(ride_id)
            self._require_driver(current, driver_id)
            if current.status != RideStatus.IN_PROGRESS:
                raise InvalidStatusTransition(
                    current.status.value, RideStatus.COMPLETED.value, ride_id
                )

            tracked_km = TrackingRepository(session).end(ride_id, "completed", now)
            distance_km = tracked_km if tracked_km > 0 else current.estimated_distance_km
            started_at = current.started_at or current.requested_at
            duration_sec = max(0, int((now - started_at).total_seconds()))

            fare = self._fares.actual_fare(
                distance_km,
                duration_sec,
                current.ride_type,
                current.surge_multiplier,
                road_condition,
                adjustments,
                now=now,
            )
            ride = rides.apply_transition(
                ride_id,
                CompletedPayload(
                    actual_distance_km=round(distance_km, 3),
                    actual_duration_sec=duration_sec,
                    actual_fare=fare.total,
                    actual_fare_breakdown=fare,
                ),
                now,
            )
            DriverLocationRepository(session).clear_ride(driver_id, ride_id, now)

        self._release_driver(driver_id)
        return self._after_transition(ride)

    def cancel_ride(
        self,
        ride_id: int,
        cancelled_by: CancelledBy,
        now: datetime,
        reason: str | None = None,
    ) -> Ride:
        """Cancel a ride from any non-terminal state, charging the rider if due.

        Raises:
            InvalidStatusTransition: If the ride is already completed or cancelled
        """
        with self._session_factory() as session, transaction(session):
            rides = RideRepository(session)
            current = rides.lock(ride_id)
            fee = self._fares.calculate_cancellation_fee(current, cancelled_by, now)
            ride = rides.apply_transition(
                ride_id,
                CancelledPayload(cancelled_by=cancelled_by, reason=reason, cancellation_fee=fee),
                now,
            )
            withdrawn = RideRequestRepository(session).close_pending(ride_id, now)
            if current.driver_id is not None:
                DriverLocationRepository(session).clear_ride(current.driver_id, ride_id, now)
            TrackingRepository(session).end(ride_id, "cancelled", now)

        with log_ride_context(ride_id):
            logger.info(f"Ride cancelled by {cancelled_by} (fee {fee})")
            try:
                self._cache.clear_ride(ride_id)
            except DependencyUnavailable as e:
                logger.warning(f"Coordination cache clear_ride skipped: {e.message}")
            if current.driver_id is not None:
                self._release_driver(current.driver_id)

        ride_transitions.labels(status=RideStatus.CANCELLED.value).inc()
        self._notifier.notify_cancelled(ride, cancelled_by, reason)
        self._notifier.notify_ride_taken(ride_id, withdrawn)
        return ride

    def rate_ride(
        self,
        ride_id: int,
        rated_by: Literal["rider", "driver"],
        rating: int,
        feedback: str | None = None,
    ) -> Ride:
        with self._session_factory() as session, transaction(session):
            return RideRepository(session).add_rating(ride_id, rated_by, rating, feedback)

    def get_ride(self, ride_id: int) -> Ride:
        with self._session_factory() as session:
            return RideRepository(session).require(ride_id)

    def get_active_ride_for_rider(self, rider_id: str) -> Ride | None:
        with self._session_factory() as session:
            return RideRepository(session).find_active_by_rider(rider_id)

    def get_active_ride_for_driver(self, driver_id: str) -> Ride | None:
        with self._session_factory() as session:
            return RideRepository(session).find_active_by_driver(driver_id)

    def ride_history(
        self,
        *,
        rider_id: str | None = None,
        driver_id: str | None = None,
        status: RideStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> RideHistoryPage:
        if not 1 <= limit <= 100 or offset < 0:
            raise ValidationError(
                "limit must be 1-100 and offset non-negative", {"limit": limit, "offset": offset}
            )
        with self._session_factory() as session:
            rides, total = RideRepository(session).history(
                rider_id=rider_id, driver_id=driver_id, status=status, limit=limit, offset=offset
            )
        return RideHistoryPage(rides=rides, total=total, limit=limit, offset=offset)

    def set_driver_availability(self, driver_id: str, available: bool, now: datetime) -> DriverLocation:
        """Toggle whether a driver takes new rides.

        Raises:
            NotFoundError: If the driver has never reported a location
            DriverAlreadyAssigned: If going available while holding a ride
        """
        with self._session_factory() as session, transaction(session):
            location = DriverLocationRepository(session).set_availability(driver_id, available, now)
        sync_geo_index(
            "geo_index.put", lambda: self._geo_index.put(location), self._retry_config
        )
        return location

    def set_driver_online(self, driver_id: str, online: bool, now: datetime) -> DriverLocation:
        with self._session_factory() as session, transaction(session):
            location = DriverLocationRepository(session).set_online(driver_id, online, now)
        sync_geo_index(
            "geo_index.put", lambda: self._geo_index.put(location), self._retry_config
        )
        return location

    def _release_driver(self, driver_id: str) -> None:
        with self._session_factory() as session:
            location = DriverLocationRepository(session).get(driver_id)
        if location is None:
            return
        sync_geo_index("geo_index.put", lambda: self._geo_index.put(location), self._retry_config)

    def _after_transition(self, ride: Ride) -> Ride:
        ride_transitions.labels(status=ride.status.value).inc()
        with log_ride_context(ride.id, driver_id=ride.driver_id):
            logger.info(f"Ride is now {ride.status.value}")
        self._notifier.notify_status_changed(ride, ride.status)
        return ride

    @staticmethod
    def _require_driver(ride: Ride, driver_id: str) -> None:
        if ride.driver_id != driver_id:
            raise ValidationError(
                f"Driver {driver_id} is not assigned to ride {ride.id}",
                {"ride_id": ride.id, "driver_id": driver_id},
            )
