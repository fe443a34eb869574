# geo.py
from math import radians, sin, cos, sqrt, atan2
from typing import Tuple
from geopy.point import Point

EARTH_RADIUS_KM = 6371.0


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers between two points."""
    phi1, phi2 = radians(lat1), radians(lat2)
    delta_phi = radians(lat2 - lat1)
    delta_lambda = radians(lon2 - lon1)

    a = sin(delta_phi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(delta_lambda / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def normalize_coordinates(latitude: float, longitude: float) -> Tuple[float, float]:
    """
    Validate a coordinate pair and wrap longitude into [-180, 180].

    Raises ValueError for latitudes outside [-90, 90].
    """
    point = Point(float(latitude), float(longitude))
    return point.latitude, point.longitude
