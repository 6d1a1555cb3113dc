"""Coordinates, great-circle distance and polygon containment.

Locations travel through the engines as ``Coordinate`` values; the JSON text
form only exists at the storage boundary (``parse_location`` /
``serialize_location``).
"""

import json
import math
from typing import Iterable, List, NamedTuple, Optional

from errors import MalformedLocation

EARTH_RADIUS_MILES = 3958.8
METERS_PER_MILE = 1609.344


class Coordinate(NamedTuple):
    lat: float
    lng: float

    @classmethod
    def of(cls, lat, lng) -> "Coordinate":
        """Build a validated coordinate from loosely typed input."""
        try:
            lat, lng = float(lat), float(lng)
        except (TypeError, ValueError):
            raise MalformedLocation(f"Not a coordinate: ({lat!r}, {lng!r})")
        if not (math.isfinite(lat) and math.isfinite(lng)):
            raise MalformedLocation(f"Not a coordinate: ({lat!r}, {lng!r})")
        if not -90 <= lat <= 90 or not -180 <= lng <= 180:
            raise MalformedLocation(f"Coordinate out of range: ({lat}, {lng})")
        return cls(lat, lng)

    @classmethod
    def optional(cls, lat, lng) -> Optional["Coordinate"]:
        if lat is None or lng is None:
            return None
        return cls.of(lat, lng)


def haversine_miles(a: Coordinate, b: Coordinate) -> float:
    """Calculate the great circle distance between two points on the earth"""
    phi1, phi2 = math.radians(a.lat), math.radians(b.lat)
    dphi = math.radians(b.lat - a.lat)
    dlambda = math.radians(b.lng - a.lng)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return EARTH_RADIUS_MILES * (2 * math.atan2(math.sqrt(h), math.sqrt(1 - h)))


def path_miles(points: Iterable[Coordinate]) -> float:
    points = list(points)
    return sum(haversine_miles(a, b) for a, b in zip(points, points[1:]))


def _vertex(raw) -> Coordinate:
    if isinstance(raw, dict):
        return Coordinate.of(raw.get("lat"), raw.get("lng", raw.get("lon")))
    if isinstance(raw, (list, tuple)) and len(raw) == 2:
        return Coordinate.of(raw[0], raw[1])
    raise MalformedLocation(f"Not a coordinate: {raw!r}")


def parse_location(raw: Optional[str]) -> Optional[Coordinate]:
    """Parse a stored ``{"lat": .., "lng": ..}`` location.

    Empty values mean "no location" and return None; anything else that
    does not parse raises MalformedLocation.
    """
    if raw is None or not str(raw).strip():
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise MalformedLocation(f"Location is not JSON: {raw!r}")
    if data is None:
        return None
    return _vertex(data)


def serialize_location(coord: Optional[Coordinate]) -> Optional[str]:
    if coord is None:
        return None
    return json.dumps({"lat": coord.lat, "lng": coord.lng})


def parse_polygon(raw) -> List[Coordinate]:
    """Parse zone vertices from JSON text (or an already decoded list)."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise MalformedLocation("Polygon is not JSON")
    if not isinstance(raw, list) or len(raw) < 3:
        raise MalformedLocation("Polygon needs at least 3 vertices")
    return [_vertex(v) for v in raw]


def point_in_polygon(point: Coordinate, polygon: List[Coordinate]) -> bool:
    # Ray casting: count edge crossings of a ray travelling east from the point.
    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        yi, xi = polygon[i].lat, polygon[i].lng
        yj, xj = polygon[j].lat, polygon[j].lng
        if (yi > point.lat) != (yj > point.lat):
            x_cross = (xj - xi) * (point.lat - yi) / (yj - yi) + xi
            if point.lng < x_cross:
                inside = not inside
        j = i
    return inside
