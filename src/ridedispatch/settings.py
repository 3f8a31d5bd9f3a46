from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

RIDE_TYPES = ("economy_moto", "standard", "premium")


class DispatchSettings(BaseSettings):
    """Candidate search, fan-out and request lifetime configuration."""

    search_radius_km: float = Field(
        default=8.0,
        gt=0.0,
        le=50.0,
        description="Radius around pickup searched for candidate drivers",
    )
    max_drivers_to_notify: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Number of drivers a ride request is fanned out to",
    )
    candidate_multiplier: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Candidates fetched per fan-out slot, to survive later filtering",
    )
    request_ttl_seconds: int = Field(
        default=30,
        ge=5,
        le=300,
        description="Seconds a driver has to answer before the request expires",
    )
    location_staleness_seconds: int = Field(
        default=300,
        ge=30,
        le=3600,
        description="Driver locations older than this are excluded from search",
    )
    average_speed_kmh: float = Field(
        default=40.0,
        gt=0.0,
        le=120.0,
        description="Straight-line speed used for ETA and duration estimates",
    )
    geo_index_backend: Literal["h3", "redis"] = "h3"
    coordination_backend: Literal["memory", "redis"] = "memory"
    notifier_backend: Literal["logging", "redis"] = "logging"
    h3_resolution: int = Field(default=9, ge=5, le=12)
    arrival_threshold_km: float = Field(
        default=0.15,
        gt=0.0,
        le=2.0,
        description="Driver within this distance of pickup counts as arrived",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["text", "json"] = "text"
    environment: str = "development"

    model_config = SettingsConfigDict(env_prefix="DISPATCH_")


class FareSettings(BaseSettings):
    """Pricing constants. Amounts are whole currency units (SSP has no minor unit)."""

    base_fare: int = Field(default=500, ge=0)
    minimum_fare: int = Field(default=1000, ge=0)
    booking_fee: int = Field(default=100, ge=0)
    cost_per_km: dict[str, int] = Field(
        default_factory=lambda: {"economy_moto": 200, "standard": 300, "premium": 500}
    )
    cost_per_minute: dict[str, int] = Field(
        default_factory=lambda: {"economy_moto": 30, "standard": 50, "premium": 80}
    )
    ride_type_multipliers: dict[str, float] = Field(
        default_factory=lambda: {"economy_moto": 0.7, "standard": 1.0, "premium": 1.5}
    )
    road_condition_multipliers: dict[str, float] = Field(
        default_factory=lambda: {"paved": 1.0, "unpaved": 1.2, "rainy_season": 1.5}
    )
    rainy_season_months: list[int] = Field(default_factory=lambda: [4, 5, 6, 7, 8, 9, 10])
    rainy_season_multiplier: float = Field(default=1.5, ge=1.0)
    morning_rush_hours: list[int] = Field(default_factory=lambda: [7, 8, 9])
    evening_rush_hours: list[int] = Field(default_factory=lambda: [17, 18, 19])
    rush_multiplier: float = Field(default=1.3, ge=1.0)
    night_hours: list[int] = Field(default_factory=lambda: [22, 23, 0, 1, 2, 3, 4, 5])
    night_multiplier: float = Field(default=1.5, ge=1.0)
    night_safety_fee: int = Field(default=500, ge=0)
    max_surge_multiplier: float = Field(default=3.0, ge=1.0)
    cancellation_fee: int = Field(default=500, ge=0)
    free_cancellation_seconds: int = Field(default=120, ge=0)
    waiting_fee_per_minute: int = Field(default=50, ge=0)
    waiting_grace_minutes: int = Field(default=5, ge=0)
    commission_rate: float = Field(default=0.20, ge=0.0, lt=1.0)
    fare_range_variance: float = Field(default=0.15, ge=0.0, lt=1.0)
    currency: str = "SSP"
    local_utc_offset_hours: int = Field(
        default=2,
        ge=-12,
        le=14,
        description="Offset applied to UTC timestamps before picking time-of-day bands",
    )
    city_center: tuple[float, float] = (4.8517, 31.5825)
    center_zone_km: float = 3.0
    residential_zone_km: float = 8.0
    zone_multipliers: dict[str, float] = Field(
        default_factory=lambda: {"center": 1.0, "residential": 1.1, "outer": 1.3}
    )

    model_config = SettingsConfigDict(env_prefix="FARE_")

    @model_validator(mode="after")
    def validate_ride_type_tables(self) -> "FareSettings":
        for name in ("cost_per_km", "cost_per_minute", "ride_type_multipliers"):
            missing = set(RIDE_TYPES) - set(getattr(self, name))
            if missing:
                raise ValueError(f"{name} is missing ride types: {', '.join(sorted(missing))}")
        if self.minimum_fare < self.base_fare:
            raise ValueError("minimum_fare must not be below base_fare")
        return self


class DatabaseSettings(BaseSettings):
    url: str = "sqlite:///./ridedispatch.db"
    timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        le=60.0,
        description="Lock wait / statement timeout for every Ledger call",
    )
    echo: bool = False

    model_config = SettingsConfigDict(env_prefix="DATABASE_")


class RedisSettings(BaseSettings):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: str = ""
    ssl: bool = False
    socket_timeout_seconds: float = Field(default=2.0, gt=0.0, le=30.0)
    key_prefix: str = "ride:requests:"
    geo_key: str = "drivers:geo"

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    @field_validator("key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        if not v.endswith(":"):
            raise ValueError("Redis key prefix must end with ':'")
        return v


class RetrySettings(BaseSettings):
    """Backoff for best-effort GeoIndex writes after a Ledger commit."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay: float = Field(default=0.1, ge=0.0, le=5.0)
    multiplier: float = Field(default=2.0, ge=1.0, le=5.0)

    model_config = SettingsConfigDict(env_prefix="RETRY_")


class Settings(BaseSettings):
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    fare: FareSettings = Field(default_factory=FareSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        case_sensitive=False,
    )


def get_settings() -> Settings:
    """Load and validate settings from environment variables."""
    return Settings()
