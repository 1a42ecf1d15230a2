"""
Unit tests for the solar orientation model.

Tests cover:
- Piecewise deviation across equator, tropics, temperate and polar bands
- Orientation validity around the north-south axis
- Suggested candidate orientations
"""
import math

import pytest

from polyplan.services.solar import (
    ARCTIC_LATITUDE,
    TROPIC_LATITUDE,
    allowed_deviation,
    axis_distance,
    calculate_solar_orientation,
    is_orientation_valid,
    normalize_angle,
    suggested_orientations,
)


class TestAllowedDeviation:

    def test_equator_is_unrestricted(self):
        window = calculate_solar_orientation(0.0)
        assert window.allowed_deviation_degrees == 180.0
        assert window.base_degrees == 0.0
        assert window.unrestricted

    @pytest.mark.parametrize("lat", [5.0, 10.0, 20.0, -15.0])
    def test_tropics_interpolate(self, lat):
        expected = TROPIC_LATITUDE + (180 - TROPIC_LATITUDE) * (1 - abs(lat) / TROPIC_LATITUDE)
        assert allowed_deviation(lat) == pytest.approx(expected)

    def test_tropics_decrease_with_latitude(self):
        values = [allowed_deviation(lat) for lat in (1, 5, 10, 15, 20, 23)]
        assert values == sorted(values, reverse=True)

    @pytest.mark.parametrize("lat", [30.0, 45.0, 60.0, -45.0])
    def test_temperate_formula(self, lat):
        ratio = math.tan(math.radians(TROPIC_LATITUDE)) / math.tan(math.radians(abs(lat)))
        assert allowed_deviation(lat) == pytest.approx(math.degrees(math.asin(ratio)))

    def test_temperate_at_45(self):
        assert allowed_deviation(45.0) == pytest.approx(25.69, abs=0.01)

    def test_tropic_boundary_is_finite(self):
        value = allowed_deviation(TROPIC_LATITUDE)
        assert math.isfinite(value)
        assert 0.0 <= value <= 180.0

    @pytest.mark.parametrize("lat", [66.6, 70.0, 89.9, -70.0])
    def test_polar_is_strict(self, lat):
        assert allowed_deviation(lat) == 0.0

    def test_arctic_boundary_uses_temperate_formula(self):
        assert allowed_deviation(ARCTIC_LATITUDE) > 0.0

    def test_non_finite_latitude_raises(self):
        with pytest.raises(ValueError):
            allowed_deviation(float("nan"))


class TestOrientationValidity:

    def test_normalize(self):
        assert normalize_angle(-10) == pytest.approx(350)
        assert normalize_angle(360) == 0.0
        assert normalize_angle(725) == pytest.approx(5)

    def test_axis_distance(self):
        assert axis_distance(0) == 0
        assert axis_distance(180) == 0
        assert axis_distance(170) == pytest.approx(10)
        assert axis_distance(350) == pytest.approx(10)
        assert axis_distance(90) == pytest.approx(90)

    def test_polar_accepts_only_north_south(self):
        assert is_orientation_valid(0, 70)
        assert is_orientation_valid(180, 70)
        assert is_orientation_valid(360, 70)
        assert not is_orientation_valid(1, 70)
        assert not is_orientation_valid(90, 70)

    def test_temperate_window(self):
        assert is_orientation_valid(25, 45)
        assert is_orientation_valid(-25, 45)
        assert is_orientation_valid(155, 45)
        assert not is_orientation_valid(30, 45)
        assert not is_orientation_valid(90, 45)

    def test_equator_accepts_everything(self):
        for angle in range(0, 360, 15):
            assert is_orientation_valid(angle, 0.0)


class TestSuggestedOrientations:

    def test_equator(self):
        assert suggested_orientations(0.0) == [0.0, 45.0, 90.0, 135.0]

    def test_polar(self):
        assert suggested_orientations(75.0) == [0.0]

    def test_temperate_spans_window(self):
        deviation = allowed_deviation(45.0)
        candidates = suggested_orientations(45.0)
        assert len(candidates) == 5
        assert candidates[0] == 0.0
        assert deviation / 2 == pytest.approx(candidates[1])
        assert 360 - deviation / 2 == pytest.approx(candidates[2])
        for angle in candidates:
            assert is_orientation_valid(angle, 45.0), f"{angle} outside window"

    def test_small_deviation_only_adds_half_steps(self):
        # ~15 degrees of deviation at 58° latitude
        lat = 58.0
        deviation = allowed_deviation(lat)
        assert 10 < deviation <= 20
        assert len(suggested_orientations(lat)) == 3

    def test_all_in_range(self):
        for lat in (-60, -30, -10, 10, 30, 60):
            for angle in suggested_orientations(lat):
                assert 0.0 <= angle < 360.0
