"""
Great-circle math for position fixes.
Uses the Haversine formula for distance and the initial-bearing formula for heading.
"""
import math
from typing import Optional

from ..errors import InvalidCoordinates


EARTH_RADIUS_KM = 6371


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in kilometers
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def initial_bearing(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Initial bearing from the first point towards the second, in degrees [0, 360).
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_lambda = math.radians(lon2 - lon1)

    y = math.sin(delta_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(delta_lambda)

    return (math.degrees(math.atan2(y, x)) + 360) % 360


def speed_kmh(distance_km: float, elapsed_seconds: float) -> Optional[float]:
    """Average speed over a leg, or None when no time has elapsed."""
    if elapsed_seconds <= 0:
        return None
    return distance_km / (elapsed_seconds / 3600)


def validate_coordinates(lat, lng) -> None:
    if isinstance(lat, bool) or isinstance(lng, bool) or not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        raise InvalidCoordinates("Latitude and longitude must be numbers")
    if math.isnan(lat) or math.isnan(lng):
        raise InvalidCoordinates("Latitude and longitude must be numbers")
    if lat < -90 or lat > 90:
        raise InvalidCoordinates("Latitude must be between -90 and 90 degrees")
    if lng < -180 or lng > 180:
        raise InvalidCoordinates("Longitude must be between -180 and 180 degrees")


def format_coordinates(lat: float, lng: float) -> str:
    return f"{lat:.6f}, {lng:.6f}"
