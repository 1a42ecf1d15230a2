"""
Shared fixtures for planner tests.
"""
import pytest

from polyplan.services.projection import GeoPoint
from tests.helpers import geo_ring, square


@pytest.fixture
def equator():
    return GeoPoint(lat=0.0, lng=30.0)


@pytest.fixture
def square_200():
    """200m x 200m square centred on the origin (local metres)."""
    return square(100.0)


@pytest.fixture
def equatorial_parcel(equator):
    """200m x 200m square parcel at the equator (WGS84)."""
    return geo_ring(equator, square(100.0))
