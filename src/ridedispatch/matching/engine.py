"""Matching engine: candidate search, fan-out and request settlement.

The Ledger is authoritative for every decision made here. The GeoIndex is a
snapshot used only to find candidates, and the CoordinationCache is a TTL'd
mirror of PENDING requests; both are written after the Ledger commits and
are allowed to lag it.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TypeVar

from sqlalchemy.orm import Session, sessionmaker

from ridedispatch.cache.coordination import CoordinationCache, accepted_marker
from ridedispatch.core.exceptions import (
    ConflictError,
    DependencyUnavailable,
    InvalidStatusTransition,
    NotFoundError,
    RideAlreadyAccepted,
)
from ridedispatch.core.retry import RetryConfig, with_retry_sync
from ridedispatch.db.repositories import (
    DriverLocationRepository,
    RideRepository,
    RideRequestRepository,
)
from ridedispatch.db.transaction import transaction
from ridedispatch.dispatch_logging import log_ride_context
from ridedispatch.geo.distance import estimate_travel_seconds
from ridedispatch.geo.index import GeoIndex, NearbyDriver
from ridedispatch.metrics import (
    acceptances,
    dispatch_outcomes,
    geo_index_fallbacks,
    request_responses,
    requests_fanned_out,
)
from ridedispatch.notify.notifier import DriverSummary, RideNotifier, SafeNotifier
from ridedispatch.ride import AcceptedPayload, RequestStatus, Ride, RideStatus
from ridedispatch.settings import DispatchSettings

from .ranking import Candidate, DistanceRanking, RankingStrategy

T = TypeVar("T")
logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    DISPATCHED = "dispatched"
    NO_DRIVERS = "no_drivers"


class AcceptRefusal(str, Enum):
    RIDE_NOT_FOUND = "ride_not_found"
    RIDE_TAKEN = "ride_taken"
    DRIVER_NOT_AVAILABLE = "driver_not_available"
    NO_PENDING_REQUEST = "no_pending_request"
    DRIVER_HAS_ACTIVE_RIDE = "driver_has_active_ride"


@dataclass
class DispatchResult:
    ride_id: int
    outcome: DispatchOutcome
    driver_ids: list[str] = field(default_factory=list)
    used_fallback: bool = False
    expires_at: datetime | None = None


@dataclass
class AcceptCheck:
    ok: bool
    reason: AcceptRefusal | None = None


@dataclass
class AcceptResult:
    ride: Ride
    loser_driver_ids: list[str]
    geo_index_synced: bool = True


@dataclass
class DeclineResult:
    ride_id: int
    driver_id: str
    pending_remaining: int
    # No PENDING request is left and the ride is still waiting for a driver
    pool_exhausted: bool


@dataclass
class ExpiryResult:
    ride_id: int
    expired_driver_ids: list[str]
    # Ride is REQUESTED, driverless and nobody is left to answer
    needs_attention: bool


def sync_geo_index(operation_name: str, call: Callable[[], object], retry_config: RetryConfig) -> bool:
    """Apply a GeoIndex write after a Ledger commit, retrying transient failures.

    Returns False if the write never landed; the next location heartbeat
    copies the Ledger state back into the index.
    """
    try:
        with_retry_sync(call, retry_config, operation_name=operation_name)
    except DependencyUnavailable as e:
        logger.error(f"{operation_name} not applied: {e.message}")
        return False
    return True


class MatchingEngine:
    """Finds drivers for a ride, fans the request out and settles the race to accept it.

    Every operation opens its own Ledger session; the engine keeps no state
    between calls, so any number of instances may serve the same rides.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        geo_index: GeoIndex,
        cache: CoordinationCache,
        notifier: RideNotifier,
        settings: DispatchSettings | None = None,
        ranking: RankingStrategy | None = None,
        retry_config: RetryConfig | None = None,
    ):
        self._session_factory = session_factory
        self._geo_index = geo_index
        self._cache = cache
        self._notifier = SafeNotifier(notifier)
        self._settings = settings or DispatchSettings()
        self._ranking = ranking or DistanceRanking()
        self._retry_config = retry_config or RetryConfig()

    @property
    def request_ttl(self) -> timedelta:
        return timedelta(seconds=self._settings.request_ttl_seconds)

    def match_and_dispatch(self, ride: Ride, now: datetime) -> DispatchResult:
        """Offer a REQUESTED ride to the nearest available drivers.

        Drivers already asked about this ride are skipped, so calling this again
        after every request expired reaches the next ring of drivers.

        Raises:
            NotFoundError: If the ride does not exist
            InvalidStatusTransition: If the ride already finished
            RideAlreadyAccepted: If a driver already took the ride
        """
        s = self._settings
        limit = s.max_drivers_to_notify * s.candidate_multiplier

        with log_ride_context(ride.id, rider_id=ride.rider_id):
            nearby: list[NearbyDriver] | None
            try:
                nearby = self._geo_index.find_nearby(
                    ride.pickup.lat, ride.pickup.lon, s.search_radius_km, limit, now
                )
            except DependencyUnavailable as e:
                logger.warning(f"GeoIndex unavailable, falling back to Ledger scan: {e.message}")
                nearby = None

            with self._session_factory() as session, transaction(session):
                rides = RideRepository(session)
                requests = RideRequestRepository(session)
                drivers = DriverLocationRepository(session)

                current = rides.lock(ride.id)
                self._require_requested(current)

                used_fallback = nearby is None
                if nearby is None:
                    geo_index_fallbacks.inc()
                    nearby = drivers.find_in_bounding_box(
                        ride.pickup.lat,
                        ride.pickup.lon,
                        s.search_radius_km,
                        limit,
                        now,
                        s.location_staleness_seconds,
                    )

                already_asked = requests.driver_ids_for_ride(ride.id)
                busy = drivers.busy_among([n.location.driver_id for n in nearby])
                candidates = [
                    Candidate(
                        driver_id=n.location.driver_id,
                        location=n.location,
                        distance_km=n.distance_km,
                        eta_seconds=estimate_travel_seconds(n.distance_km, s.average_speed_kmh),
                    )
                    for n in nearby
                    if n.location.driver_id not in already_asked
                    and n.location.driver_id not in busy
                ]
                selected = self._ranking.rank(candidates)[: s.max_drivers_to_notify]

                if selected:
                    requests.create_batch(
                        ride.id,
                        [(c.driver_id, c.distance_km, c.eta_seconds) for c in selected],
                        now,
                    )

            if not selected:
                logger.info(f"No drivers found within {s.search_radius_km} km")
                dispatch_outcomes.labels(outcome=DispatchOutcome.NO_DRIVERS.value).inc()
                self._notifier.notify_no_drivers(current)
                return DispatchResult(
                    ride_id=ride.id,
                    outcome=DispatchOutcome.NO_DRIVERS,
                    used_fallback=used_fallback,
                )

            driver_ids = [c.driver_id for c in selected]
            self._best_effort(
                "put_requests",
                lambda: self._cache.put_requests(
                    ride.id, driver_ids, s.request_ttl_seconds, expires_at=now + self.request_ttl
                ),
            )
            self._notifier.notify_drivers_of_request(
                driver_ids, current, current.estimated_fare_breakdown, s.request_ttl_seconds
            )
            self._notifier.notify_rider_searching(current, len(driver_ids))

            requests_fanned_out.inc(len(driver_ids))
            dispatch_outcomes.labels(outcome=DispatchOutcome.DISPATCHED.value).inc()
            logger.info(
                f"Ride offered to {len(driver_ids)} drivers"
                f"{' (Ledger fallback)' if used_fallback else ''}"
            )
            return DispatchResult(
                ride_id=ride.id,
                outcome=DispatchOutcome.DISPATCHED,
                driver_ids=driver_ids,
                used_fallback=used_fallback,
                expires_at=now + self.request_ttl,
            )

    def can_driver_accept(self, driver_id: str, ride_id: int, now: datetime) -> AcceptCheck:
        """Read-only precondition check; acceptance itself re-checks under lock."""
        with self._session_factory() as session:
            ride = RideRepository(session).get(ride_id)
            if ride is None:
                return AcceptCheck(False, AcceptRefusal.RIDE_NOT_FOUND)
            if ride.status != RideStatus.REQUESTED or ride.driver_id is not None:
                return AcceptCheck(False, AcceptRefusal.RIDE_TAKEN)

            if not self._has_live_request(session, ride_id, driver_id, now):
                return AcceptCheck(False, AcceptRefusal.NO_PENDING_REQUEST)

            ledger_location = DriverLocationRepository(session).get(driver_id)
            if ledger_location is not None and ledger_location.current_ride_id is not None:
                return AcceptCheck(False, AcceptRefusal.DRIVER_HAS_ACTIVE_RIDE)

        try:
            location = self._geo_index.get(driver_id)
        except DependencyUnavailable:
            location = ledger_location
        if location is None or not (location.is_available and location.is_online):
            return AcceptCheck(False, AcceptRefusal.DRIVER_NOT_AVAILABLE)
        return AcceptCheck(True)

    def accept_ride(self, ride_id: int, driver_id: str, now: datetime) -> AcceptResult:
        """Settle the ride on this driver; exactly one concurrent caller wins.

        The ride row is locked and moved to ACCEPTED with a compare-and-swap in
        the same transaction that marks the winner's request ACCEPTED, every
        sibling PENDING request TAKEN and the driver busy.

        Raises:
            NotFoundError: If the ride or this driver's request does not exist
            InvalidStatusTransition: If the ride already finished
            RideAlreadyAccepted: If another driver won the ride
            DriverAlreadyAssigned: If this driver already holds another ride
            ConflictError: If the request expired or was already answered
        """
        with log_ride_context(ride_id, driver_id=driver_id):
            holder = self._best_effort("holder", lambda: self._cache.holder(accepted_marker(ride_id)))
            if holder is not None and holder != driver_id:
                acceptances.labels(result="conflict").inc()
                raise RideAlreadyAccepted(
                    f"Ride {ride_id} was already accepted", {"ride_id": ride_id}
                )

            try:
                with self._session_factory() as session, transaction(session):
                    rides = RideRepository(session)
                    requests = RideRequestRepository(session)
                    drivers = DriverLocationRepository(session)

                    current = rides.lock(ride_id)
                    self._require_requested(current)
                    self._require_acceptable_request(requests, ride_id, driver_id, now)

                    ride = rides.apply_transition(ride_id, AcceptedPayload(driver_id=driver_id), now)
                    requests.respond(ride_id, driver_id, RequestStatus.ACCEPTED, now)
                    losers = requests.mark_taken(ride_id, driver_id, now)
                    drivers.assign_ride(driver_id, ride_id, now)

                    request = requests.get(ride_id, driver_id)
                    location = drivers.get(driver_id)
            except ConflictError:
                acceptances.labels(result="conflict").inc()
                raise

            acceptances.labels(result="accepted").inc()
            request_responses.labels(status=RequestStatus.ACCEPTED.value).inc()
            if losers:
                request_responses.labels(status=RequestStatus.TAKEN.value).inc(len(losers))
            logger.info(f"Ride accepted; {len(losers)} sibling requests taken")

            self._best_effort("clear_ride", lambda: self._cache.clear_ride(ride_id))
            self._best_effort(
                "claim",
                lambda: self._cache.claim(
                    accepted_marker(ride_id), driver_id, self._settings.request_ttl_seconds
                ),
            )
            synced = sync_geo_index(
                "geo_index.assign_ride",
                lambda: self._geo_index.assign_ride(driver_id, ride_id, now),
                self._retry_config,
            )

            summary = None
            if location is not None:
                summary = DriverSummary(
                    driver_id=driver_id,
                    lat=location.lat,
                    lon=location.lon,
                    heading=location.heading,
                    distance_km=request.distance_to_pickup_km if request else None,
                    eta_seconds=request.eta_seconds if request else None,
                )
            self._notifier.notify_rider_of_acceptance(ride, summary)
            self._notifier.notify_ride_taken(ride_id, losers)

            return AcceptResult(ride=ride, loser_driver_ids=losers, geo_index_synced=synced)

    def decline_ride(self, ride_id: int, driver_id: str, now: datetime) -> DeclineResult:
        """Record a driver's refusal.

        Raises:
            NotFoundError: If the ride or this driver's request does not exist
            InvalidStatusTransition: If the ride already finished
            RideAlreadyAccepted: If another driver already won the ride
            ConflictError: If the request was already answered or expired
        """
        with log_ride_context(ride_id, driver_id=driver_id):
            with self._session_factory() as session, transaction(session):
                rides = RideRepository(session)
                requests = RideRequestRepository(session)

                ride = rides.lock(ride_id)
                if ride.status.is_terminal:
                    raise InvalidStatusTransition(ride.status.value, "declined", ride_id)

                request = requests.get(ride_id, driver_id)
                if request is None:
                    raise NotFoundError(
                        f"No request for driver {driver_id} on ride {ride_id}",
                        {"ride_id": ride_id, "driver_id": driver_id},
                    )
                if request.status == RequestStatus.TAKEN:
                    raise RideAlreadyAccepted(
                        f"Ride {ride_id} was already accepted", {"ride_id": ride_id}
                    )
                if not requests.respond(ride_id, driver_id, RequestStatus.DECLINED, now):
                    raise ConflictError(
                        f"Request already {request.status.value}",
                        {"ride_id": ride_id, "driver_id": driver_id, "status": request.status.value},
                    )
                pending = requests.count_pending(ride_id)

            request_responses.labels(status=RequestStatus.DECLINED.value).inc()
            self._best_effort("drop_request", lambda: self._cache.drop_request(ride_id, driver_id))

            exhausted = pending == 0 and ride.status == RideStatus.REQUESTED
            if exhausted:
                logger.warning("Every notified driver declined; ride needs a new dispatch")
            return DeclineResult(
                ride_id=ride_id,
                driver_id=driver_id,
                pending_remaining=pending,
                pool_exhausted=exhausted,
            )

    def expire_stale_requests(self, ride_id: int, now: datetime) -> ExpiryResult:
        """Expire this ride's PENDING requests older than the request TTL."""
        cutoff = now - self.request_ttl
        with log_ride_context(ride_id):
            with self._session_factory() as session, transaction(session):
                ride = RideRepository(session).require(ride_id)
                requests = RideRequestRepository(session)
                expired = requests.expire_created_before(ride_id, cutoff, now)
                pending = requests.count_pending(ride_id)

            for driver_id in expired:
                self._best_effort(
                    "drop_request", lambda d=driver_id: self._cache.drop_request(ride_id, d)
                )
            if expired:
                request_responses.labels(status=RequestStatus.EXPIRED.value).inc(len(expired))

            needs_attention = (
                ride.status == RideStatus.REQUESTED and ride.driver_id is None and pending == 0
            )
            if needs_attention:
                logger.warning(f"Ride still unassigned after {len(expired)} requests expired")
            return ExpiryResult(
                ride_id=ride_id, expired_driver_ids=expired, needs_attention=needs_attention
            )

    def sweep_expired(self, now: datetime) -> list[ExpiryResult]:
        """Run expire_stale_requests for every ride holding a stale PENDING request."""
        with self._session_factory() as session:
            ride_ids = RideRequestRepository(session).ride_ids_with_pending_before(
                now - self.request_ttl
            )
        return [self.expire_stale_requests(ride_id, now) for ride_id in ride_ids]

    def _has_live_request(self, session: Session, ride_id: int, driver_id: str, now: datetime) -> bool:
        cached = self._best_effort(
            "has_request", lambda: self._cache.has_request(ride_id, driver_id, now)
        )
        if cached:
            return True
        request = RideRequestRepository(session).get(ride_id, driver_id)
        return (
            request is not None
            and request.status == RequestStatus.PENDING
            and now - request.created_at <= self.request_ttl
        )

    def _require_acceptable_request(
        self, requests: RideRequestRepository, ride_id: int, driver_id: str, now: datetime
    ) -> None:
        request = requests.get(ride_id, driver_id)
        if request is None:
            raise NotFoundError(
                f"No request for driver {driver_id} on ride {ride_id}",
                {"ride_id": ride_id, "driver_id": driver_id},
            )
        if request.status == RequestStatus.TAKEN:
            raise RideAlreadyAccepted(f"Ride {ride_id} was already accepted", {"ride_id": ride_id})
        if request.status != RequestStatus.PENDING:
            raise ConflictError(
                f"Request already {request.status.value}",
                {"ride_id": ride_id, "driver_id": driver_id, "status": request.status.value},
            )
        if now - request.created_at > self.request_ttl:
            raise ConflictError(
                f"Request for ride {ride_id} expired",
                {"ride_id": ride_id, "driver_id": driver_id, "status": "expired"},
            )

    @staticmethod
    def _require_requested(ride: Ride) -> None:
        if ride.status.is_terminal:
            raise InvalidStatusTransition(ride.status.value, RideStatus.ACCEPTED.value, ride.id)
        if ride.status != RideStatus.REQUESTED or ride.driver_id is not None:
            raise RideAlreadyAccepted(
                f"Ride {ride.id} was already accepted",
                {"ride_id": ride.id, "status": ride.status.value},
            )

    @staticmethod
    def _best_effort(operation: str, call: Callable[[], T]) -> T | None:
        try:
            return call()
        except DependencyUnavailable as e:
            logger.warning(f"Coordination cache {operation} skipped: {e.message}")
            return None
