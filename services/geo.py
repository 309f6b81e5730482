import math
from typing import Tuple

EARTH_RADIUS_KM = 6371.0

Coordinate = Tuple[float, float]  # (lat, lng) in decimal degrees


def haversine_km(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two (lat, lng) points in kilometres."""
    lat1, lng1 = a
    lat2, lng2 = b
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def distance_meters(a: Coordinate, b: Coordinate) -> float:
    return haversine_km(a, b) * 1000.0


def is_within_geofence(user: Coordinate, target: Coordinate, radius_m: float) -> bool:
    # Inclusive at the boundary
    return distance_meters(user, target) <= radius_m
