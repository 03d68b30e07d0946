# utils/geofence.py

from math import radians, sin, cos, sqrt, atan2

EARTH_RADIUS_METERS = 6371000


def haversine_dist(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    φ1, φ2 = radians(lat1), radians(lat2)
    Δφ = radians(lat2 - lat1)
    Δλ = radians(lng2 - lng1)

    a = sin(Δφ/2)**2 + cos(φ1) * cos(φ2) * sin(Δλ/2)**2
    # Rounding can push a fractionally above 1 for antipodal points
    a = min(1.0, a)
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def is_within_radius(
    lat: float,
    lng: float,
    center_lat: float,
    center_lng: float,
    radius_m: float
) -> bool:

    return haversine_dist(lat, lng, center_lat, center_lng) <= radius_m


def distance(a, b) -> float:
    """Great-circle distance in meters between two objects exposing
    ``latitude`` and ``longitude`` (Coordinate, GPSSample, ...)."""
    return haversine_dist(a.latitude, a.longitude, b.latitude, b.longitude)


def within_geofence(point, fence) -> bool:
    return is_within_radius(
        point.latitude,
        point.longitude,
        fence.center.latitude,
        fence.center.longitude,
        fence.radius_meters,
    )
