"""
Geo Service - great-circle distance and radius membership
"""
import math
from typing import Optional

from redemption_engine.models.redemption import GeoPoint

EARTH_RADIUS_KM = 6371.0


def distance_km(a: GeoPoint, b: GeoPoint) -> float:
    """Haversine distance between two points in km."""
    lat1_rad = math.radians(a.lat)
    lat2_rad = math.radians(b.lat)
    delta_lat = math.radians(b.lat - a.lat)
    delta_lon = math.radians(b.lng - a.lng)

    h = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) *
         math.sin(delta_lon / 2) ** 2)
    # Rounding can push h a hair above 1 for antipodal points
    h = min(1.0, h)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    return EARTH_RADIUS_KM * c


def is_within_radius(
    point: Optional[GeoPoint],
    center: Optional[GeoPoint],
    radius_km: float
) -> bool:
    """
    True when point lies within radius_km of center.

    A missing point or center is a business state, not an error: the check
    simply fails.
    """
    if point is None or center is None:
        return False
    return distance_km(point, center) <= radius_km
