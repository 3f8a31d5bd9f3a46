"""Great-circle geometry for matching, pricing and arrival detection.

Everything here works on (lat, lon) degrees. Distances used by matching,
fares and ETAs are kilometers; arrival thresholds are meters.
"""

from collections.abc import Iterable
from math import asin, atan2, cos, degrees, radians, sin, sqrt

EARTH_RADIUS_KM = 6371.0

KM_PER_DEGREE_LAT = 111.32


def haversine_distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometers."""
    phi1, phi2 = radians(lat1), radians(lat2)
    half_dphi = (phi2 - phi1) / 2
    half_dlambda = radians(lon2 - lon1) / 2

    h = sin(half_dphi) ** 2 + cos(phi1) * cos(phi2) * sin(half_dlambda) ** 2
    return 2 * EARTH_RADIUS_KM * asin(min(1.0, sqrt(h)))


def haversine_distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_distance_km(lat1, lon1, lat2, lon2) * 1000.0


def bearing_degrees(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial compass bearing from the first point to the second, in [0, 360)."""
    phi1, phi2 = radians(lat1), radians(lat2)
    dlambda = radians(lon2 - lon1)
    x = sin(dlambda) * cos(phi2)
    y = cos(phi1) * sin(phi2) - sin(phi1) * cos(phi2) * cos(dlambda)
    return (degrees(atan2(x, y)) + 360.0) % 360.0


def bounding_box(lat: float, lon: float, radius_km: float) -> tuple[float, float, float, float]:
    """Latitude/longitude box that fully contains a circle of radius_km.

    Args:
        lat: Latitude of the circle centre in degrees
        lon: Longitude of the circle centre in degrees
        radius_km: Circle radius in kilometers

    Returns:
        (min_lat, max_lat, min_lon, max_lon)
    """
    lat_delta = radius_km / KM_PER_DEGREE_LAT
    # Longitude degrees shrink with cos(lat); clamp near the poles.
    lon_delta = lat_delta / max(cos(radians(lat)), 0.01)
    return lat - lat_delta, lat + lat_delta, lon - lon_delta, lon + lon_delta


def estimate_travel_seconds(distance_km: float, average_speed_kmh: float) -> int:
    """Straight-line travel time at a constant average speed, in whole seconds."""
    if average_speed_kmh <= 0:
        raise ValueError("average_speed_kmh must be positive")
    if distance_km <= 0:
        return 0
    return round(distance_km / average_speed_kmh * 3600)


def route_distance_km(points: Iterable[tuple[float, float]]) -> float:
    """Sum of consecutive Haversine segments over a sequence of (lat, lon) points."""
    total = 0.0
    previous: tuple[float, float] | None = None
    for point in points:
        if previous is not None:
            total += haversine_distance_km(*previous, *point)
        previous = point
    return total


def is_within_proximity(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
    threshold_m: float = 150.0,
) -> bool:
    """True if the points are at most threshold_m meters apart.

    Called on every heartbeat of a driver heading to pickup, so most calls
    are rejected by the box check before any trigonometry on the second point.
    """
    # Box widened 1% so the boundary never yields a false negative.
    min_lat, max_lat, min_lon, max_lon = bounding_box(lat1, lon1, threshold_m * 1.01 / 1000.0)
    if not (min_lat <= lat2 <= max_lat and min_lon <= lon2 <= max_lon):
        return False
    return haversine_distance_m(lat1, lon1, lat2, lon2) <= threshold_m
