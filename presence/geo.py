import math

EARTH_RADIUS_METERS = 6371000


def _check_point(point):
    lat, lng = point
    if lat is None or lng is None:
        raise ValueError("latitude and longitude are required")
    lat, lng = float(lat), float(lng)
    if math.isnan(lat) or not -90 <= lat <= 90:
        raise ValueError(f"latitude out of range: {lat}")
    if math.isnan(lng) or not -180 <= lng <= 180:
        raise ValueError(f"longitude out of range: {lng}")
    return lat, lng


def distance_meters(p1, p2):
    """Great-circle distance between two (lat, lng) points, in meters.

    Uses the haversine formula on a sphere of radius 6,371 km. Raises
    ValueError for coordinates outside [-90, 90] / [-180, 180].
    """
    lat1, lng1 = _check_point(p1)
    lat2, lng2 = _check_point(p2)
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (math.sin(d_lat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(d_lng / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def within_radius(point, center, radius_meters):
    return distance_meters(point, center) <= radius_meters
