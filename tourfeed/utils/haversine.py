from math import radians, sin, cos, sqrt, asin

from tourfeed.models.dto import Coordinate

# Mean Earth radius in meters
EARTH_RADIUS_M = 6371000.0

def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points given in decimal degrees.

    Returns:
        Distance in meters.
    """
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])

    dlon = lon2 - lon1
    dlat = lat2 - lat1

    a = sin(dlat / 2)**2 + cos(lat1) * cos(lat2) * sin(dlon / 2)**2
    return 2 * EARTH_RADIUS_M * asin(sqrt(a))

def distance_between(origin: Coordinate, target: Coordinate) -> float:
    return haversine_m(origin.latitude, origin.longitude, target.latitude, target.longitude)
