"""
Parcel builders shared by tests.

Parcels are built in metres around a centre and converted to WGS84 with
the same equirectangular constants the projector uses, so local geometry
in tests matches what the pipeline sees.
"""
import math

from polyplan.services.projection import METERS_PER_DEGREE, GeoPoint, LocalPoint


def offset_point(center: GeoPoint, dx: float, dy: float) -> GeoPoint:
    """Geographic point ``dx`` metres east and ``dy`` metres north of ``center``."""
    return GeoPoint(
        lat=center.lat + dy / METERS_PER_DEGREE,
        lng=center.lng + dx / (METERS_PER_DEGREE * math.cos(math.radians(center.lat))),
    )


def geo_ring(center: GeoPoint, local_points) -> list[GeoPoint]:
    return [offset_point(center, x, y) for x, y in local_points]


def square(half: float) -> list[LocalPoint]:
    return [
        LocalPoint(-half, -half),
        LocalPoint(half, -half),
        LocalPoint(half, half),
        LocalPoint(-half, half),
    ]
