"""
Unit tests for the packing optimizer.

Every produced layout is checked against shapely for containment, gutter
clearance, gap clearance, sizing and block decomposition.
"""
import itertools
import math

import pytest
from shapely.geometry import Polygon

from polyplan.services.geometry import rotate_polygon
from polyplan.services.packing_optimizer import (
    PackingOptimizer,
    PackingProgress,
    PlacedStructure,
    StructureArena,
    StructureSpec,
    TerminationReason,
    candidate_orientations,
    edge_bearings,
    grid_step,
)
from polyplan.services.projection import LocalPoint
from polyplan.services.solar import is_orientation_valid
from polyplan.services.terrain_constraints import RestrictedZone, ZoneKind
from tests.helpers import square

TOLERANCE = 1e-5


@pytest.fixture
def spec():
    return StructureSpec(min_side=8, max_side=100, gutter_width=2, gap=2, block_width=8, block_height=4)


def side_lengths(footprint):
    a, b, c = footprint[0], footprint[1], footprint[2]
    return math.dist(a, b), math.dist(b, c)


def assert_valid_layout(outcome, ring, spec, zones=()):
    parcel = Polygon(ring)
    for s in outcome.structures:
        fp = Polygon(s.footprint)
        assert fp.is_valid, f"{s.id} footprint is not a valid polygon"
        assert parcel.buffer(TOLERANCE).contains(fp), f"{s.id} leaves the parcel"
        assert fp.distance(parcel.exterior) >= spec.gutter_width - TOLERANCE, f"{s.id} inside boundary gutter"
        for zone in zones:
            assert fp.distance(Polygon(zone.polygon)) >= spec.gutter_width - TOLERANCE, (
                f"{s.id} inside gutter of {zone.kind.value} zone"
            )
        for side in side_lengths(s.footprint):
            assert spec.min_side - TOLERANCE <= side <= spec.max_side + TOLERANCE, f"{s.id} side {side}"
        assert fp.area == pytest.approx(s.area)
        assert len(s.blocks) == s.blocks_along * s.blocks_across
        assert sum(Polygon(b).area for b in s.blocks) == pytest.approx(s.area)
        assert s.length_m >= s.width_m

    for a, b in itertools.combinations(outcome.structures, 2):
        distance = Polygon(a.footprint).distance(Polygon(b.footprint))
        assert distance >= spec.gap - TOLERANCE, f"{a.id} and {b.id} only {distance:.3f}m apart"


def zone(ring, kind=ZoneKind.WATER) -> RestrictedZone:
    return RestrictedZone(kind=kind, polygon=tuple(LocalPoint(x, y) for x, y in ring))


class TestStructureSpec:

    def test_block_counts(self, spec):
        assert spec.block_counts(4) == range(2, 26)
        assert spec.block_counts(8) == range(1, 13)

    def test_invalid(self):
        with pytest.raises(ValueError):
            StructureSpec(min_side=50, max_side=20).validate()
        with pytest.raises(ValueError):
            StructureSpec(block_width=0).validate()
        with pytest.raises(ValueError):
            StructureSpec(gap=-1).validate()
        with pytest.raises(ValueError):
            StructureSpec(max_structure_area=0).validate()

    def test_optimizer_rejects_invalid_spec(self):
        with pytest.raises(ValueError):
            PackingOptimizer(StructureSpec(min_side=50, max_side=20))


class TestStructureAreaCap:

    def test_structures_stay_under_cap(self, square_200):
        spec = StructureSpec(
            min_side=8, max_side=100, gutter_width=2, gap=2, block_width=8, block_height=4,
            max_structure_area=1000,
        )
        outcome = PackingOptimizer(spec).optimize(square_200)

        assert outcome.structures
        assert_valid_layout(outcome, square_200, spec)
        for s in outcome.structures:
            assert s.area <= 1000 + TOLERANCE, f"{s.id} covers {s.area} m²"

    def test_uncapped_structures_exceed_cap(self, spec, square_200):
        outcome = PackingOptimizer(spec).optimize(square_200)
        assert max(s.area for s in outcome.structures) > 1000


class TestTiers:

    def test_three_tiers(self):
        tiers = PackingOptimizer(StructureSpec(min_side=16, max_side=100)).tiers()
        assert [t.name for t in tiers] == ["large", "medium", "small"]
        assert [t.min_short_side for t in tiers] == [58.0, 37.0, 16.0]

    def test_duplicate_floors_collapse(self):
        tiers = PackingOptimizer(StructureSpec(min_side=16, max_side=16)).tiers()
        assert len(tiers) == 1


class TestOrientationCandidates:

    def test_edge_bearings_longest_first(self):
        ring = [(0, 0), (100, 0), (100, 10), (0, 10)]
        assert edge_bearings(ring) == [90.0, 90.0, 0.0, 0.0]

    def test_sweep_without_solar(self, square_200):
        angles = candidate_orientations(square_200, 0.0, solar_enabled=False, step_degrees=10)
        assert len(angles) == 18
        assert all(0 <= a < 180 for a in angles)

    def test_sweep_adds_longest_edge(self):
        ring = rotate_polygon([(0, 0), (100, 0), (100, 10), (0, 10)], math.radians(-33))
        angles = candidate_orientations(ring, 0.0, solar_enabled=False, step_degrees=10)
        assert len(angles) == 19
        assert any(abs(a - 123.0) < 1e-6 for a in angles)

    def test_polar_only_north_south(self):
        diamond = rotate_polygon(square(100.0), math.radians(45))
        assert candidate_orientations(diamond, 70.0, solar_enabled=True) == [0.0]

    def test_temperate_within_window(self, square_200):
        angles = candidate_orientations(square_200, 45.0, solar_enabled=True)
        assert len(angles) == 5
        for angle in angles:
            assert is_orientation_valid(angle, 45.0)


class TestGridStep:

    @pytest.mark.parametrize("width,height,expected", [
        (8, 4, 1.0),
        (8, 3, 1.0),
        (8.5, 4, 0.5),
        (3, 3, 0.75),
    ])
    def test_divides_blocks(self, width, height, expected):
        spec = StructureSpec(min_side=3, max_side=100, block_width=width, block_height=height)
        assert grid_step(spec, 100.0) == pytest.approx(expected)

    def test_coarsens_large_extents(self):
        spec = StructureSpec(block_width=8, block_height=4)
        assert grid_step(spec, 10_000.0) == pytest.approx(4.0)


class TestStructureArena:

    @staticmethod
    def structure(id, cx):
        footprint = tuple(LocalPoint(x + cx, y) for x, y in square(5.0))
        return PlacedStructure(
            id=id, footprint=footprint, rotation_degrees=0.0, blocks=(footprint,),
            area=100.0, length_m=10.0, width_m=10.0,
        )

    def test_gap_enforced(self):
        arena = StructureArena(gap=2.0, cell_size=20.0)
        assert arena.add(self.structure("P1", 0.0))
        assert not arena.add(self.structure("P2", 11.0)), "1m apart violates the gap"
        assert arena.add(self.structure("P3", 12.0)), "Exactly the gap is allowed"
        assert len(arena) == 2
        assert arena.total_area == pytest.approx(200.0)

    def test_nearby(self):
        arena = StructureArena(gap=2.0, cell_size=20.0)
        arena.add(self.structure("P1", 0.0))
        arena.add(self.structure("P2", 500.0))
        near = arena.nearby(self.structure("X", 20.0).footprint, 2.0)
        assert [s.id for s in near] == ["P1"]


class TestEquatorialLayout:

    def test_square_parcel(self, spec, square_200):
        outcome = PackingOptimizer(spec).optimize(square_200, orientations=[0.0])

        assert outcome.termination_reason == TerminationReason.EXHAUSTED
        assert len(outcome.structures) >= 1
        assert outcome.total_area / 40_000 > 0.6
        assert_valid_layout(outcome, square_200, spec)
        assert [s.id for s in outcome.structures] == [f"P{i}" for i in range(1, len(outcome.structures) + 1)]

    def test_orientation_sweep(self, spec, square_200):
        angles = candidate_orientations(square_200, 0.0, solar_enabled=False, step_degrees=30)
        outcome = PackingOptimizer(spec).optimize(square_200, orientations=angles)

        assert outcome.total_area / 40_000 > 0.6
        assert outcome.orientations_tried == angles
        assert_valid_layout(outcome, square_200, spec)
        assert {s.rotation_degrees for s in outcome.structures} <= set(angles)

    def test_irregular_parcel(self, spec):
        ring = [(0, 0), (180, 0), (180, 70), (90, 150), (60, 150), (60, 90), (0, 90)]
        outcome = PackingOptimizer(spec).optimize(ring, orientations=[0.0, 30.0, 75.0, 135.0])

        assert len(outcome.structures) >= 1
        assert_valid_layout(outcome, ring, spec)

    def test_clockwise_ring(self, spec, square_200):
        outcome = PackingOptimizer(spec).optimize(list(reversed(square_200)), orientations=[0.0])
        assert len(outcome.structures) >= 1
        assert_valid_layout(outcome, square_200, spec)

    def test_rotated_structures_keep_rotation(self, spec, square_200):
        outcome = PackingOptimizer(spec).optimize(square_200, orientations=[30.0])
        assert len(outcome.structures) >= 1
        assert all(s.rotation_degrees == 30.0 for s in outcome.structures)
        assert_valid_layout(outcome, square_200, spec)

    def test_blocks_are_row_major(self, spec, square_200):
        outcome = PackingOptimizer(spec).optimize(square_200, orientations=[0.0])
        s = outcome.structures[0]
        assert s.blocks_across > 1 and s.blocks_along > 1
        assert s.blocks[1][0].x - s.blocks[0][0].x == pytest.approx(spec.block_width)
        assert s.blocks[s.blocks_across][0].y - s.blocks[0][0].y == pytest.approx(spec.block_height)


class TestRestrictedZones:

    def test_zone_in_middle(self, spec, square_200):
        zones = [zone(square(20.0))]
        outcome = PackingOptimizer(spec).optimize(square_200, zones, orientations=[0.0, 45.0])

        assert len(outcome.structures) >= 1
        assert_valid_layout(outcome, square_200, spec, zones)

    def test_rotated_zone(self, spec, square_200):
        zones = [zone(rotate_polygon([(30, -60), (80, -60), (80, 10), (30, 10)], 0.3), ZoneKind.FOREST)]
        outcome = PackingOptimizer(spec).optimize(square_200, zones, orientations=[0.0, 60.0])
        assert_valid_layout(outcome, square_200, spec, zones)

    def test_fully_restricted(self, spec, square_200):
        zones = [zone(square(150.0))]
        outcome = PackingOptimizer(spec).optimize(square_200, zones, orientations=[0.0, 45.0, 90.0])

        assert outcome.structures == []
        assert outcome.termination_reason == TerminationReason.NO_VALID_ORIENTATION


class TestSolarLayouts:

    def test_polar_parcel(self, spec):
        diamond = rotate_polygon(square(100.0), math.radians(45))
        angles = candidate_orientations(diamond, 70.0, solar_enabled=True)
        outcome = PackingOptimizer(spec).optimize(diamond, orientations=angles)

        assert len(outcome.structures) >= 1
        assert all(s.rotation_degrees == 0.0 for s in outcome.structures)
        assert_valid_layout(outcome, diamond, spec)

    def test_temperate_parcel(self, spec, square_200):
        angles = candidate_orientations(square_200, 45.0, solar_enabled=True)
        outcome = PackingOptimizer(spec).optimize(square_200, orientations=angles)

        for s in outcome.structures:
            assert is_orientation_valid(s.rotation_degrees, 45.0)


class TestTermination:

    def test_no_orientations(self, spec, square_200):
        outcome = PackingOptimizer(spec).optimize(square_200, orientations=[])
        assert outcome.termination_reason == TerminationReason.NO_VALID_ORIENTATION

    def test_parcel_too_small(self):
        spec = StructureSpec(min_side=16)
        outcome = PackingOptimizer(spec).optimize(square(5.0), orientations=[0.0])
        assert outcome.structures == []
        assert outcome.termination_reason == TerminationReason.AREA_TOO_SMALL

    def test_strip_too_narrow(self):
        spec = StructureSpec(min_side=16, gutter_width=2)
        strip = [(-100, -6), (100, -6), (100, 6), (-100, 6)]
        outcome = PackingOptimizer(spec).optimize(strip, orientations=[0.0, 90.0])
        assert outcome.structures == []
        assert outcome.termination_reason == TerminationReason.AREA_TOO_SMALL

    def test_no_whole_block_size(self, square_200):
        spec = StructureSpec(min_side=9, max_side=11, block_width=8, block_height=4)
        outcome = PackingOptimizer(spec).optimize(square_200, orientations=[0.0])
        assert outcome.termination_reason == TerminationReason.AREA_TOO_SMALL

    def test_zero_time_budget(self, spec, square_200):
        outcome = PackingOptimizer(spec, time_budget_s=0).optimize(square_200, orientations=[0.0])
        assert outcome.termination_reason == TerminationReason.TIMEOUT
        assert outcome.structures == []

    def test_iteration_budget_keeps_best_so_far(self, spec, square_200):
        outcome = PackingOptimizer(spec, max_iterations=1).optimize(square_200, orientations=[0.0])
        assert outcome.termination_reason == TerminationReason.TIMEOUT
        assert len(outcome.structures) == 1
        assert_valid_layout(outcome, square_200, spec)

    def test_area_budget(self, spec, square_200):
        outcome = PackingOptimizer(spec, area_budget_sqm=5000).optimize(square_200, orientations=[0.0])
        assert outcome.termination_reason == TerminationReason.AREA_BUDGET_REACHED
        assert outcome.total_area >= 5000
        assert outcome.total_area < 40_000 * 0.6


class TestProgressAndWorkers:

    def test_progress_events(self, spec, square_200):
        events: list[PackingProgress] = []
        PackingOptimizer(spec).optimize(square_200, orientations=[0.0, 90.0], progress=events.append)

        assert events
        fractions = [e.fraction_complete for e in events]
        assert fractions == sorted(fractions)
        assert fractions[-1] == pytest.approx(1.0)
        assert {e.tier for e in events} == {"large", "medium", "small"}

    def test_parallel_matches_serial(self, spec, square_200):
        angles = [0.0, 30.0, 60.0, 90.0]
        serial = PackingOptimizer(spec, workers=1).optimize(square_200, orientations=angles)
        parallel = PackingOptimizer(spec, workers=4).optimize(square_200, orientations=angles)

        assert [s.footprint for s in parallel.structures] == [s.footprint for s in serial.structures]
        assert parallel.tier_orientations == serial.tier_orientations
