"""
Pure geographic helpers: coordinate validation, haversine distance,
polygon tests and a greedy nearest-neighbour tour.
"""

import math
from typing import List, Sequence

from shapely.geometry import Point, Polygon

from mamacare.errors import BadRequest
from mamacare.schemas import Location

EARTH_RADIUS_KM = 6371.0

# Coordinates are kept to 6 decimal places (about 11 cm)
PRECISION = 1e6

# Rough bounding box of Sierra Leone
SIERRA_LEONE_BOUNDS = {
    'min_lat': 6.9,
    'max_lat': 10.0,
    'min_lng': -13.3,
    'max_lng': -10.3,
}

# (name, min_lat, max_lat, min_lng, max_lng), checked in order
REGIONS = [
    ('western', 8.0, 8.6, -13.3, -13.0),
    ('northern', 9.0, 10.0, -12.0, -11.0),
    ('eastern', 7.5, 9.0, -11.5, -10.3),
    ('southern', 6.9, 8.0, -12.5, -11.0),
    ('north_west', 9.0, 10.0, -13.0, -12.0),
]


def validate(latitude: float, longitude: float) -> Location:
    """Check coordinate bounds and return a Location."""
    if latitude is None or longitude is None:
        raise BadRequest("latitude and longitude are required")
    if not -90 <= latitude <= 90:
        raise BadRequest("latitude must be between -90 and 90", {"latitude": latitude})
    if not -180 <= longitude <= 180:
        raise BadRequest("longitude must be between -180 and 180", {"longitude": longitude})
    return Location(latitude=latitude, longitude=longitude)


def _round(value: float) -> float:
    return round(value * PRECISION) / PRECISION


def normalize(latitude: float, longitude: float) -> Location:
    return Location(latitude=_round(latitude), longitude=_round(longitude))


def to_location(latitude: float, longitude: float) -> Location:
    """Validate then normalise a raw coordinate pair."""
    validate(latitude, longitude)
    return normalize(latitude, longitude)


def distance_km(a: Location, b: Location) -> float:
    """Great-circle distance in kilometres (haversine)."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlng = math.radians(b.longitude - a.longitude)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    h = min(1.0, h)
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def format_distance(km: float) -> str:
    if km < 1:
        return f"{int(km * 1000)} m"
    return f"{km:.1f} km"


def format_duration(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds} sec"
    if seconds < 3600:
        return f"{seconds // 60} min"
    hours, rest = divmod(seconds, 3600)
    return f"{hours}h {rest // 60}m"


def format_point(location: Location) -> str:
    return f"{location.latitude:.6f}, {location.longitude:.6f}"


def point_in_polygon(point: Location, boundary: Sequence[Location]) -> bool:
    """
    Polygon membership with latitude as y and longitude as x.

    Points on a vertex or an edge count as inside. Boundaries with fewer
    than three points contain nothing.
    """
    if len(boundary) < 3:
        return False
    polygon = Polygon([(p.longitude, p.latitude) for p in boundary])
    return polygon.covers(Point(point.longitude, point.latitude))  # shapely uses (x, y) = (lng, lat)


def centroid(boundary: Sequence[Location]) -> Location:
    """Arithmetic mean of the boundary points, normalised."""
    if len(boundary) < 3:
        raise BadRequest("Territory must have at least 3 boundary points")
    lat = sum(p.latitude for p in boundary) / len(boundary)
    lng = sum(p.longitude for p in boundary) / len(boundary)
    return normalize(lat, lng)


def nearest_neighbor_tour(start: Location, waypoints: Sequence[Location], end: Location) -> List[Location]:
    """
    Greedy ordering of ``waypoints`` starting from ``start``.

    ``end`` is not reordered; the caller appends it. Ties go to the
    earliest waypoint.
    """
    if len(waypoints) <= 1:
        return list(waypoints)

    remaining = list(waypoints)
    ordered = []
    current = start
    while remaining:
        best_index = 0
        best_distance = distance_km(current, remaining[0])
        for index in range(1, len(remaining)):
            d = distance_km(current, remaining[index])
            if d < best_distance:
                best_index, best_distance = index, d
        current = remaining.pop(best_index)
        ordered.append(current)
    return ordered


def is_sierra_leone(latitude: float, longitude: float) -> bool:
    b = SIERRA_LEONE_BOUNDS
    return b['min_lat'] <= latitude <= b['max_lat'] and b['min_lng'] <= longitude <= b['max_lng']


def region_for(latitude: float, longitude: float) -> str:
    """Coarse administrative region label for a point in Sierra Leone."""
    for name, min_lat, max_lat, min_lng, max_lng in REGIONS:
        if min_lat <= latitude <= max_lat and min_lng <= longitude <= max_lng:
            return name
    return 'unknown'
