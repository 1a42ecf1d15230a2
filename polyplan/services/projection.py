"""
Coordinate projection between WGS84 and a parcel-local planar frame.

Uses an equirectangular approximation centred on the boundary centroid.
Accurate for parcel-scale extents (a few km); curvature error grows with
distance from the centroid and is not corrected.
"""
import math
from dataclasses import dataclass
from typing import Iterable, NamedTuple, Sequence

METERS_PER_DEGREE = 111320.0
EARTH_RADIUS_M = 6371e3


@dataclass(frozen=True)
class GeoPoint:
    """Geographic coordinate in degrees (WGS84)."""
    lat: float
    lng: float

    def is_finite(self) -> bool:
        return math.isfinite(self.lat) and math.isfinite(self.lng)


class LocalPoint(NamedTuple):
    """Planar coordinate in metres relative to a centroid (x east, y north)."""
    x: float
    y: float


def vertex_centroid(points: Sequence[GeoPoint]) -> GeoPoint:
    """Mean of the vertices. Used as the projection origin."""
    if not points:
        raise ValueError("Cannot compute centroid of an empty point list")
    lat = sum(p.lat for p in points) / len(points)
    lng = sum(p.lng for p in points) / len(points)
    return GeoPoint(lat=lat, lng=lng)


def to_local(centroid: GeoPoint, point: GeoPoint) -> LocalPoint:
    """Project a geographic point into the centroid's local frame."""
    cos_lat = math.cos(math.radians(centroid.lat))
    x = (point.lng - centroid.lng) * METERS_PER_DEGREE * cos_lat
    y = (point.lat - centroid.lat) * METERS_PER_DEGREE
    return LocalPoint(x, y)


def to_geo(centroid: GeoPoint, point: LocalPoint) -> GeoPoint:
    """Inverse of :func:`to_local`."""
    cos_lat = math.cos(math.radians(centroid.lat))
    lat = centroid.lat + point.y / METERS_PER_DEGREE
    lng = centroid.lng + point.x / (METERS_PER_DEGREE * cos_lat)
    return GeoPoint(lat=lat, lng=lng)


def distance_meters(a: GeoPoint, b: GeoPoint) -> float:
    """Haversine great-circle distance in metres."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_phi = math.radians(b.lat - a.lat)
    d_lambda = math.radians(b.lng - a.lng)

    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def bearing_degrees(a: GeoPoint, b: GeoPoint) -> float:
    """Initial bearing from ``a`` to ``b``, normalised to [0, 360)."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_lambda = math.radians(b.lng - a.lng)

    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    theta = math.degrees(math.atan2(y, x))
    return (theta + 360.0) % 360.0


def polygon_area_sqm(points: Sequence[GeoPoint]) -> float:
    """
    Area of a geographic polygon in square metres.

    Projects the ring about its own vertex centroid and applies the
    shoelace formula.
    """
    if len(points) < 3:
        return 0.0
    centroid = vertex_centroid(points)
    local = [to_local(centroid, p) for p in points]
    total = 0.0
    for i, (x1, y1) in enumerate(local):
        x2, y2 = local[(i + 1) % len(local)]
        total += x1 * y2 - x2 * y1
    return abs(total) / 2.0


def point_in_polygon(point: GeoPoint, polygon: Sequence[GeoPoint]) -> bool:
    """Even-odd ray casting in lat/lng space (lng as x, lat as y)."""
    inside = False
    n = len(polygon)
    j = n - 1
    for i in range(n):
        xi, yi = polygon[i].lng, polygon[i].lat
        xj, yj = polygon[j].lng, polygon[j].lat
        if (yi > point.lat) != (yj > point.lat):
            x_cross = (xj - xi) * (point.lat - yi) / (yj - yi) + xi
            if point.lng < x_cross:
                inside = not inside
        j = i
    return inside


class CoordinateProjector:
    """Projector bound to one request's centroid."""

    def __init__(self, centroid: GeoPoint):
        self.centroid = centroid

    @classmethod
    def for_boundary(cls, boundary: Sequence[GeoPoint]) -> "CoordinateProjector":
        return cls(vertex_centroid(boundary))

    def to_local(self, point: GeoPoint) -> LocalPoint:
        return to_local(self.centroid, point)

    def to_geo(self, point: LocalPoint) -> GeoPoint:
        return to_geo(self.centroid, point)

    def to_local_many(self, points: Iterable[GeoPoint]) -> list[LocalPoint]:
        return [to_local(self.centroid, p) for p in points]

    def to_geo_many(self, points: Iterable[Sequence[float]]) -> list[GeoPoint]:
        return [to_geo(self.centroid, LocalPoint(p[0], p[1])) for p in points]
