"""SQLAlchemy ORM models for the ride Ledger."""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .utils import utc_now


class Base(DeclarativeBase):
    pass


class Ride(Base):
    __tablename__ = "rides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    rider_id: Mapped[str] = mapped_column(String, nullable=False)
    driver_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    ride_type: Mapped[str] = mapped_column(String(16), nullable=False)

    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lon: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    dropoff_lat: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_lon: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_address: Mapped[str | None] = mapped_column(Text, nullable=True)

    estimated_fare: Mapped[int] = mapped_column(Integer, nullable=False)
    estimated_fare_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    actual_fare: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actual_fare_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    surge_multiplier: Mapped[float] = mapped_column(Float, default=1.0)
    estimated_distance_km: Mapped[float] = mapped_column(Float, nullable=False)
    estimated_duration_sec: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    actual_duration_sec: Mapped[int | None] = mapped_column(Integer, nullable=True)

    requested_at: Mapped[datetime] = mapped_column(nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    arrived_at: Mapped[datetime | None] = mapped_column(nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    rider_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rider_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    driver_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    driver_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancelled_by: Mapped[str | None] = mapped_column(String(16), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_fee: Mapped[int] = mapped_column(Integer, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        default=lambda: utc_now(),
        onupdate=lambda: utc_now(),
    )

    __table_args__ = (
        Index("idx_ride_status", "status"),
        Index("idx_ride_rider_status", "rider_id", "status"),
        Index("idx_ride_driver_status", "driver_id", "status"),
        Index("idx_ride_requested_at", "requested_at"),
    )


class RideRequest(Base):
    __tablename__ = "ride_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ride_id: Mapped[int] = mapped_column(ForeignKey("rides.id"), nullable=False)
    driver_id: Mapped[str] = mapped_column(String, nullable=False)
    distance_to_pickup_km: Mapped[float] = mapped_column(Float, nullable=False)
    eta_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("ride_id", "driver_id", name="uq_ride_request_driver"),
        Index("idx_ride_request_ride_status", "ride_id", "status"),
        Index("idx_ride_request_driver_status", "driver_id", "status"),
    )


class DriverLocation(Base):
    """Last-known driver position; source for the bounding-box fallback search."""

    __tablename__ = "driver_locations"

    driver_id: Mapped[str] = mapped_column(String, primary_key=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    heading: Mapped[float | None] = mapped_column(Float, nullable=True)
    speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_available: Mapped[bool] = mapped_column(Boolean, default=False)
    is_online: Mapped[bool] = mapped_column(Boolean, default=False)
    current_ride_id: Mapped[int | None] = mapped_column(ForeignKey("rides.id"), nullable=True)
    last_updated: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("idx_driver_location_lat_lon", "lat", "lon"),
        Index("idx_driver_location_available", "is_available", "is_online"),
    )


class RideTracking(Base):
    __tablename__ = "ride_tracking"

    ride_id: Mapped[int] = mapped_column(ForeignKey("rides.id"), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    total_distance_km: Mapped[float] = mapped_column(Float, default=0.0)
    waypoint_count: Mapped[int] = mapped_column(Integer, default=0)
    last_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    started_at: Mapped[datetime] = mapped_column(nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(nullable=True)


class RideWaypoint(Base):
    __tablename__ = "ride_waypoints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ride_id: Mapped[int] = mapped_column(ForeignKey("rides.id"), nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    heading: Mapped[float | None] = mapped_column(Float, nullable=True)
    speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    source: Mapped[str] = mapped_column(String(16), default="gps")
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (Index("idx_ride_waypoint_ride_time", "ride_id", "recorded_at"),)


class LedgerMetadata(Base):
    __tablename__ = "ledger_metadata"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=lambda: utc_now(),
        onupdate=lambda: utc_now(),
    )
