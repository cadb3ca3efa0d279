import math

from bloodmatch.errors import InvalidCoordinate
from bloodmatch.models import GeoPoint

EARTH_RADIUS_KM = 6371.0


def validate_coordinate(latitude: float, longitude: float) -> None:
    # NaN fails both comparisons
    if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
        raise InvalidCoordinate(latitude, longitude)


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance in kilometres (Haversine). This is straight-line
    distance, not travel distance.
    """
    validate_coordinate(lat1, lon1)
    validate_coordinate(lat2, lon2)

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def point_distance_km(a: GeoPoint, b: GeoPoint) -> float:
    return distance_km(a.latitude, a.longitude, b.latitude, b.longitude)
