"""Fare calculation.

Every lookup that depends on the clock or the pickup point takes ``now`` and
``location`` explicitly, so the engine holds no mutable state beyond its
settings and two quotes with equal inputs are always equal.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from math import floor
from typing import TYPE_CHECKING, Literal, NamedTuple

from pydantic import BaseModel, Field

from ridedispatch.core.exceptions import ValidationError
from ridedispatch.geo.distance import estimate_travel_seconds, haversine_distance_km
from ridedispatch.settings import FareSettings

if TYPE_CHECKING:
    from ridedispatch.ride import Ride

logger = logging.getLogger(__name__)


def round_half_up(amount: float) -> int:
    """Round to the nearest whole unit with halves going up (1112.5 -> 1113)."""
    return int(floor(amount + 0.5))


class RideType(str, Enum):
    ECONOMY_MOTO = "economy_moto"
    STANDARD = "standard"
    PREMIUM = "premium"


class RoadCondition(str, Enum):
    PAVED = "paved"
    UNPAVED = "unpaved"
    RAINY_SEASON = "rainy_season"


class TimeBand(NamedTuple):
    name: Literal["morning_rush", "evening_rush", "night", "standard"]
    multiplier: float
    safety_fee: int


class FareBreakdown(BaseModel):
    """Itemized fare. Amounts are whole currency units."""

    base_fare: int = Field(ge=0)
    distance_fare: int = Field(ge=0)
    time_fare: int = Field(ge=0)
    booking_fee: int = Field(ge=0)
    subtotal: int = Field(ge=0)
    ride_type_multiplier: float = Field(gt=0)
    surge_multiplier: float = Field(gt=0)
    seasonal_multiplier: float = Field(gt=0)
    road_condition_multiplier: float = Field(gt=0)
    night_fee: int = Field(ge=0)
    adjustments: dict[str, int] = Field(default_factory=dict)
    total: int = Field(ge=0)
    currency: str = "SSP"


class FareAdjustments(BaseModel):
    """Post-ride changes applied on top of the computed fare."""

    discount: int = Field(default=0, ge=0)
    toll_fees: int = Field(default=0, ge=0)
    waiting_fee: int = Field(default=0, ge=0)
    tip: int = Field(default=0, ge=0)

    def net(self) -> int:
        return self.toll_fees + self.waiting_fee + self.tip - self.discount


class DriverEarnings(BaseModel):
    total_fare: int
    commission: int
    commission_rate: float
    driver_earnings: int
    currency: str


class FareEstimate(BaseModel):
    """Quote for a pickup/dropoff pair, with every ride type for comparison."""

    distance_km: float
    duration_sec: int
    time_surge_multiplier: float
    zone_multiplier: float
    breakdown: FareBreakdown
    all_ride_types: dict[RideType, int]
    low: int
    high: int
    currency: str


class FareEngine:
    """Prices rides from per-km and per-minute rates with composed multipliers and fees."""

    def __init__(self, settings: FareSettings | None = None, average_speed_kmh: float = 40.0):
        self.settings = settings or FareSettings()
        self.average_speed_kmh = average_speed_kmh

    def local_time(self, now: datetime) -> datetime:
        """Shift a UTC timestamp into the market's local clock."""
        return now + timedelta(hours=self.settings.local_utc_offset_hours)

    def time_band(self, now: datetime) -> TimeBand:
        """Time-of-day surge band for a UTC timestamp."""
        hour = self.local_time(now).hour
        s = self.settings
        if hour in s.morning_rush_hours:
            return TimeBand("morning_rush", s.rush_multiplier, 0)
        if hour in s.evening_rush_hours:
            return TimeBand("evening_rush", s.rush_multiplier, 0)
        if hour in s.night_hours:
            return TimeBand("night", s.night_multiplier, s.night_safety_fee)
        return TimeBand("standard", 1.0, 0)

    def seasonal_multiplier(self, now: datetime) -> float:
        if self.local_time(now).month in self.settings.rainy_season_months:
            return self.settings.rainy_season_multiplier
        return 1.0

    def zone_multiplier(self, location: tuple[float, float]) -> float:
        """Centre, residential or outer ring by distance from the city centre."""
        center_lat, center_lon = self.settings.city_center
        distance = haversine_distance_km(location[0], location[1], center_lat, center_lon)
        zones = self.settings.zone_multipliers
        if distance <= self.settings.center_zone_km:
            return zones["center"]
        if distance <= self.settings.residential_zone_km:
            return zones["residential"]
        return zones["outer"]

    def current_surge(self, location: tuple[float, float], now: datetime) -> float:
        """Combined time, zone and seasonal surge, capped and rounded to 2 places."""
        combined = (
            self.time_band(now).multiplier
            * self.zone_multiplier(location)
            * self.seasonal_multiplier(now)
        )
        return round(min(combined, self.settings.max_surge_multiplier), 2)

    def quote(
        self,
        distance_km: float,
        duration_sec: float,
        ride_type: RideType | str,
        surge_multiplier: float | None = None,
        road_condition: RoadCondition | str = RoadCondition.PAVED,
        *,
        now: datetime,
        location: tuple[float, float] | None = None,
    ) -> FareBreakdown:
        """Compute the fare breakdown for a trip.

        Args:
            distance_km: Trip distance in kilometers
            duration_sec: Trip duration in seconds
            ride_type: One of the configured ride types
            surge_multiplier: Explicit surge; when None the time-of-day band is used
                (and, if location is given, scaled by the pickup zone)
            road_condition: Road condition key
            now: UTC timestamp that selects the time-of-day band and season
            location: Pickup (lat, lon), only used when surge_multiplier is None

        Returns:
            FareBreakdown whose total is floored at the minimum fare

        Raises:
            ValidationError: If distance or duration is negative, or the ride type,
                road condition or surge is unknown or out of range
        """
        if distance_km < 0 or duration_sec < 0:
            raise ValidationError(
                "Distance and duration must be non-negative",
                {"distance_km": distance_km, "duration_sec": duration_sec},
            )
        ride_type = self._ride_type(ride_type)
        s = self.settings
        road_key = getattr(road_condition, "value", road_condition)
        if road_key not in s.road_condition_multipliers:
            raise ValidationError(f"Unknown road condition: {road_condition}")

        distance_fare = distance_km * s.cost_per_km[ride_type.value]
        time_fare = (duration_sec / 60) * s.cost_per_minute[ride_type.value]
        subtotal = s.base_fare + distance_fare + time_fare

        band = self.time_band(now)
        if surge_multiplier is None:
            effective_surge = band.multiplier
            if location is not None:
                effective_surge = min(
                    effective_surge * self.zone_multiplier(location), s.max_surge_multiplier
                )
        else:
            if surge_multiplier <= 0 or surge_multiplier > s.max_surge_multiplier:
                raise ValidationError(
                    f"Surge multiplier must be in (0, {s.max_surge_multiplier}]",
                    {"surge_multiplier": surge_multiplier},
                )
            effective_surge = surge_multiplier

        ride_type_multiplier = s.ride_type_multipliers[ride_type.value]
        seasonal = self.seasonal_multiplier(now)
        road = s.road_condition_multipliers[road_key]

        # The night safety fee is flat: added after the multipliers, never scaled by them.
        total = subtotal * ride_type_multiplier * effective_surge * seasonal * road
        total += band.safety_fee
        total += s.booking_fee
        total = max(total, s.minimum_fare)

        breakdown = FareBreakdown(
            base_fare=round_half_up(s.base_fare),
            distance_fare=round_half_up(distance_fare),
            time_fare=round_half_up(time_fare),
            booking_fee=round_half_up(s.booking_fee),
            subtotal=round_half_up(subtotal),
            ride_type_multiplier=ride_type_multiplier,
            surge_multiplier=effective_surge,
            seasonal_multiplier=seasonal,
            road_condition_multiplier=road,
            night_fee=band.safety_fee,
            total=round_half_up(total),
            currency=s.currency,
        )
        logger.debug(
            f"Fare quoted: {distance_km:.2f}km {duration_sec:.0f}s {ride_type.value} "
            f"-> {breakdown.total} {breakdown.currency}"
        )
        return breakdown

    def actual_fare(
        self,
        distance_km: float,
        duration_sec: float,
        ride_type: RideType | str,
        surge_multiplier: float,
        road_condition: RoadCondition | str = RoadCondition.PAVED,
        adjustments: FareAdjustments | None = None,
        *,
        now: datetime,
    ) -> FareBreakdown:
        """Final fare from tracked distance and duration, with adjustments, floored at minimum."""
        breakdown = self.quote(
            distance_km,
            duration_sec,
            ride_type,
            surge_multiplier,
            road_condition,
            now=now,
        )
        if adjustments is None:
            return breakdown

        adjusted = max(breakdown.total + adjustments.net(), self.settings.minimum_fare)
        logger.info(f"Actual fare calculated: {ride_type} total={adjusted}")
        return breakdown.model_copy(
            update={
                "total": round_half_up(adjusted),
                "adjustments": adjustments.model_dump(exclude_defaults=True),
            }
        )

    def estimate(
        self,
        pickup: tuple[float, float],
        dropoff: tuple[float, float],
        ride_type: RideType | str = RideType.STANDARD,
        *,
        now: datetime,
    ) -> FareEstimate:
        """Straight-line estimate between two points, priced for every ride type."""
        ride_type = self._ride_type(ride_type)
        distance_km = haversine_distance_km(pickup[0], pickup[1], dropoff[0], dropoff[1])
        duration_sec = estimate_travel_seconds(distance_km, self.average_speed_kmh)
        time_surge = self.time_band(now).multiplier
        zone = self.zone_multiplier(pickup)
        surge = min(time_surge * zone, self.settings.max_surge_multiplier)

        all_types = {
            rt: self.quote(distance_km, duration_sec, rt, surge, now=now).total for rt in RideType
        }
        breakdown = self.quote(distance_km, duration_sec, ride_type, surge, now=now)
        low, high = self.fare_range(breakdown.total)
        return FareEstimate(
            distance_km=round(distance_km, 2),
            duration_sec=duration_sec,
            time_surge_multiplier=time_surge,
            zone_multiplier=zone,
            breakdown=breakdown,
            all_ride_types=all_types,
            low=low,
            high=high,
            currency=self.settings.currency,
        )

    def fare_range(self, total: int) -> tuple[int, int]:
        variance = self.settings.fare_range_variance
        return round_half_up(total * (1 - variance)), round_half_up(total * (1 + variance))

    def calculate_cancellation_fee(
        self,
        ride: "Ride",
        cancelled_by: Literal["rider", "driver", "system"],
        now: datetime,
    ) -> int:
        """Fee charged to the rider when a ride is cancelled at ``now``."""
        elapsed = (now - ride.requested_at).total_seconds()
        if elapsed <= self.settings.free_cancellation_seconds:
            return 0

        # Driver and system cancellations never charge the rider.
        if cancelled_by != "rider":
            return 0

        if ride.driver_id is not None:
            logger.info(
                f"Cancellation fee applied to ride {ride.id}: {self.settings.cancellation_fee}"
            )
            return self.settings.cancellation_fee
        return 0

    def waiting_fee(self, waiting_minutes: float) -> int:
        grace = self.settings.waiting_grace_minutes
        if waiting_minutes <= grace:
            return 0
        return round_half_up((waiting_minutes - grace) * self.settings.waiting_fee_per_minute)

    def driver_earnings(self, total_fare: int, commission_rate: float | None = None) -> DriverEarnings:
        rate = self.settings.commission_rate if commission_rate is None else commission_rate
        commission = round_half_up(total_fare * rate)
        return DriverEarnings(
            total_fare=total_fare,
            commission=commission,
            commission_rate=rate,
            driver_earnings=total_fare - commission,
            currency=self.settings.currency,
        )

    def format_fare(self, amount: float) -> str:
        return f"{round_half_up(amount):,} {self.settings.currency}"

    @staticmethod
    def format_duration(seconds: float) -> str:
        minutes = round_half_up(seconds / 60)
        if minutes < 60:
            return f"~{minutes} min"
        return f"~{minutes // 60}h {minutes % 60}min"

    def _ride_type(self, ride_type: RideType | str) -> RideType:
        try:
            return RideType(ride_type)
        except ValueError as e:
            raise ValidationError(f"Unknown ride type: {ride_type}") from e
