import math

from attendance_service.models import DeviceLocation, SessionLocation
from typing import Union

EARTH_RADIUS_KM = 6371.0

Coordinate = Union[DeviceLocation, SessionLocation]


def distance(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in meters between two WGS-84 points (Haversine)."""
    lat1, lon1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lon2 = math.radians(b.latitude), math.radians(b.longitude)
    d_lat = lat2 - lat1
    d_lon = lon2 - lon1

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_KM * c * 1000
