"""
Tiered greedy packing of polyhouses.

Places rectangular structures built from whole blocks over a parcel,
largest tier first:
1. For each candidate orientation the parcel is rotated into the structure
   frame and covered by a fine occupancy grid. Cells outside the parcel,
   within the gutter of its edges or of a restricted zone, or within the gap
   of an accepted structure are blocked.
2. Rectangles are grown from anchor cells (free cells whose left and lower
   neighbours are blocked) one block at a time along the structure axis,
   shrinking the across extent to what still fits.
3. The largest rectangle wins each scan step (ties go to the one nearest the
   centroid of the unclaimed area) and is claimed together with its gap
   buffer before the scan continues.
4. Orientations are evaluated independently per tier; the one with the
   largest placed area is committed to the structure arena.

The search is a bounded heuristic: time and iteration budgets are checked
cooperatively and yield the best-so-far layout.
"""
import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, Optional, Sequence

import numpy as np

from polyplan.services.geometry import (
    bounding_box,
    boxes_near_polygon,
    boxes_touch_ring,
    ensure_ccw,
    points_in_polygon,
    polygon_area,
    polygon_distance,
    rectangle,
    rotate_point,
    rotate_polygon,
)
from polyplan.services.projection import LocalPoint
from polyplan.services.solar import is_orientation_valid, suggested_orientations
from polyplan.services.terrain_constraints import RestrictedZone

logger = logging.getLogger(__name__)

# Slack applied to clearances so exact-distance contacts are accepted
CLEARANCE_EPSILON = 1e-6

# Largest occupancy grid step before coarsening, and the cell count that triggers coarsening
MAX_FINE_STEP_M = 1.0
MAX_GRID_CELLS = 400_000


# =============================================================================
# Types
# =============================================================================


class TerminationReason(str, Enum):
    """Why the optimizer stopped."""
    EXHAUSTED = "exhausted"
    AREA_BUDGET_REACHED = "area_budget_reached"
    NO_VALID_ORIENTATION = "no_valid_orientation"
    AREA_TOO_SMALL = "area_too_small"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class StructureSpec:
    """Sizing and spacing rules for one planning request (metres)."""
    min_side: float = 16.0
    max_side: float = 100.0
    gutter_width: float = 2.0
    gap: float = 2.0
    block_width: float = 8.0
    block_height: float = 4.0
    max_structure_area: Optional[float] = None

    def validate(self) -> None:
        if self.block_width <= 0 or self.block_height <= 0:
            raise ValueError("Block dimensions must be positive")
        if self.min_side <= 0:
            raise ValueError("min_side must be positive")
        if self.min_side > self.max_side:
            raise ValueError(f"min_side ({self.min_side}) exceeds max_side ({self.max_side})")
        if self.gutter_width < 0 or self.gap < 0:
            raise ValueError("gutter_width and gap must not be negative")
        if self.max_structure_area is not None and not self.max_structure_area > 0:
            raise ValueError("max_structure_area must be positive")

    @property
    def block_area(self) -> float:
        return self.block_width * self.block_height

    def block_counts(self, block_size: float) -> range:
        """Block counts whose side length falls within [min_side, max_side]."""
        low = max(1, math.ceil(self.min_side / block_size - 1e-9))
        high = math.floor(self.max_side / block_size + 1e-9)
        return range(low, high + 1)


@dataclass(frozen=True)
class PlacementTier:
    """A pass of the greedy fill with a floor on the structure's shorter side."""
    name: str
    min_short_side: float


@dataclass(frozen=True)
class PlacedStructure:
    """An accepted polyhouse. Never modified after acceptance."""
    id: str
    footprint: tuple[LocalPoint, ...]
    rotation_degrees: float
    blocks: tuple[tuple[LocalPoint, ...], ...]
    area: float
    length_m: float
    width_m: float
    tier: str = "small"
    blocks_along: int = 0
    blocks_across: int = 0

    @property
    def center(self) -> LocalPoint:
        xs = [p.x for p in self.footprint]
        ys = [p.y for p in self.footprint]
        return LocalPoint(sum(xs) / len(xs), sum(ys) / len(ys))


@dataclass(frozen=True)
class PackingProgress:
    """Progress event emitted while packing."""
    tier: str
    orientation_degrees: Optional[float]
    structures_placed: int
    placed_area_sqm: float
    message: str
    fraction_complete: float = 0.0


ProgressCallback = Callable[[PackingProgress], None]


@dataclass
class PackingOutcome:
    """Result of one optimizer run."""
    structures: list[PlacedStructure]
    termination_reason: TerminationReason
    orientations_tried: list[float] = field(default_factory=list)
    tier_orientations: dict[str, Optional[float]] = field(default_factory=dict)
    iterations: int = 0
    elapsed_seconds: float = 0.0

    @property
    def total_area(self) -> float:
        return sum(s.area for s in self.structures)


# =============================================================================
# Structure arena
# =============================================================================


class StructureArena:
    """
    Append-only collection of accepted structures.

    Structures are bucketed on a uniform grid so gap checks only look at
    neighbours. ``add`` is the only mutation and refuses structures that
    would come closer than ``gap`` to an accepted one.
    """

    def __init__(self, gap: float, cell_size: float = 50.0):
        self.gap = gap
        self.cell_size = max(cell_size, 1.0)
        self._structures: list[PlacedStructure] = []
        self._buckets: dict[tuple[int, int], list[int]] = {}

    def __len__(self) -> int:
        return len(self._structures)

    def __iter__(self) -> Iterator[PlacedStructure]:
        return iter(self._structures)

    @property
    def structures(self) -> tuple[PlacedStructure, ...]:
        return tuple(self._structures)

    @property
    def total_area(self) -> float:
        return sum(s.area for s in self._structures)

    def _keys(self, bbox: tuple[float, float, float, float]) -> Iterator[tuple[int, int]]:
        min_x, min_y, max_x, max_y = bbox
        for i in range(math.floor(min_x / self.cell_size), math.floor(max_x / self.cell_size) + 1):
            for j in range(math.floor(min_y / self.cell_size), math.floor(max_y / self.cell_size) + 1):
                yield (i, j)

    def nearby(self, ring: Sequence[LocalPoint], margin: float) -> list[PlacedStructure]:
        """Accepted structures whose buckets overlap the ring's box grown by ``margin``."""
        min_x, min_y, max_x, max_y = bounding_box(ring)
        seen: set[int] = set()
        result = []
        for key in self._keys((min_x - margin, min_y - margin, max_x + margin, max_y + margin)):
            for index in self._buckets.get(key, ()):
                if index not in seen:
                    seen.add(index)
                    result.append(self._structures[index])
        return result

    def conflicts(self, footprint: Sequence[LocalPoint]) -> bool:
        for other in self.nearby(footprint, self.gap):
            if polygon_distance(footprint, other.footprint) < self.gap - CLEARANCE_EPSILON:
                return True
        return False

    def add(self, structure: PlacedStructure) -> bool:
        """Accept a structure unless it violates the gap. Returns True if accepted."""
        if self.conflicts(structure.footprint):
            return False
        index = len(self._structures)
        self._structures.append(structure)
        for key in self._keys(bounding_box(structure.footprint)):
            self._buckets.setdefault(key, []).append(index)
        return True


# =============================================================================
# Budget
# =============================================================================


class _Budget:
    """Cooperative wall-clock and iteration budget shared by worker threads."""

    def __init__(self, time_budget_s: Optional[float], max_iterations: Optional[int]):
        self.started = time.monotonic()
        self.deadline = self.started + time_budget_s if time_budget_s is not None else None
        self.max_iterations = max_iterations
        self._iterations = 0
        self._lock = threading.Lock()

    @property
    def iterations(self) -> int:
        return self._iterations

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def expired(self) -> bool:
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return True
        return self.max_iterations is not None and self._iterations >= self.max_iterations

    def tick(self) -> bool:
        """Count one scan step. Returns False once the budget is spent."""
        if self.expired():
            return False
        with self._lock:
            self._iterations += 1
        return True


# =============================================================================
# Orientation grid
# =============================================================================


class _OrientationGrid:
    """
    Occupancy grid in the frame of one orientation.

    Frame axes: ``v`` points along the bearing (clockwise from north), ``u``
    is perpendicular to it. ``block_width`` runs along ``u``,
    ``block_height`` along ``v``.
    """

    def __init__(
        self,
        angle_degrees: float,
        ring: Sequence[LocalPoint],
        zones: Sequence[Sequence[LocalPoint]],
        spec: StructureSpec,
        step: float,
    ):
        self.angle = angle_degrees
        self.theta = math.radians(angle_degrees)
        self.step = step

        frame_ring = self.to_frame(ring)
        min_u, min_v, max_u, max_v = bounding_box(frame_ring)
        self.origin_u = min_u
        self.origin_v = min_v
        self.cols = max(1, math.ceil((max_u - min_u) / step - 1e-9))
        self.rows = max(1, math.ceil((max_v - min_v) / step - 1e-9))

        us = min_u + np.arange(self.cols) * step
        vs = min_v + np.arange(self.rows) * step
        self.u0, self.v0 = np.meshgrid(us, vs)
        self.u1 = self.u0 + step
        self.v1 = self.v0 + step

        centre_u = self.u0 + step / 2.0
        centre_v = self.v0 + step / 2.0
        inside = points_in_polygon(centre_u, centre_v, frame_ring)
        blocked = ~inside
        blocked |= boxes_touch_ring(
            self.u0, self.v0, self.u1, self.v1, frame_ring, spec.gutter_width - CLEARANCE_EPSILON
        )
        for zone in zones:
            blocked |= boxes_near_polygon(
                self.u0, self.v0, self.u1, self.v1,
                self.to_frame(zone), spec.gutter_width - CLEARANCE_EPSILON,
            )
        self.static_blocked = blocked
        self.centre_u = centre_u
        self.centre_v = centre_v

    def to_frame(self, points: Sequence[Sequence[float]]) -> list[tuple[float, float]]:
        return rotate_polygon(points, self.theta)

    def from_frame(self, u: float, v: float) -> LocalPoint:
        return LocalPoint(*rotate_point((u, v), -self.theta))

    def block_structure(self, ring: Sequence[LocalPoint], clearance: float, blocked: np.ndarray) -> None:
        """Mark cells within ``clearance`` of a footprint as blocked, in place."""
        frame_ring = self.to_frame(ring)
        min_u, min_v, max_u, max_v = bounding_box(frame_ring)
        pad = clearance + self.step
        c0 = max(0, math.floor((min_u - pad - self.origin_u) / self.step))
        c1 = min(self.cols, math.ceil((max_u + pad - self.origin_u) / self.step))
        r0 = max(0, math.floor((min_v - pad - self.origin_v) / self.step))
        r1 = min(self.rows, math.ceil((max_v + pad - self.origin_v) / self.step))
        if c0 >= c1 or r0 >= r1:
            return
        window = (slice(r0, r1), slice(c0, c1))
        blocked[window] |= boxes_near_polygon(
            self.u0[window], self.v0[window], self.u1[window], self.v1[window],
            frame_ring, clearance - CLEARANCE_EPSILON,
        )


@dataclass
class _Rect:
    row: int
    col: int
    n_along: int
    n_across: int
    area: float


@dataclass
class _OrientationResult:
    angle: float
    rects: list[_Rect]
    area: float
    free_cells: int
    timed_out: bool = False
    area_budget_reached: bool = False


# =============================================================================
# Orientation candidates
# =============================================================================


def _normalize_half_turn(angle: float) -> float:
    a = angle % 180.0
    if a >= 180.0 - 1e-9:
        a = 0.0
    return round(a, 9) + 0.0


def edge_bearings(ring: Sequence[LocalPoint]) -> list[float]:
    """Bearings of the ring's edges in [0, 180), longest edge first."""
    edges = []
    n = len(ring)
    for i in range(n):
        a = ring[i]
        b = ring[(i + 1) % n]
        dx = b[0] - a[0]
        dy = b[1] - a[1]
        length = math.hypot(dx, dy)
        if length > 0:
            edges.append((length, _normalize_half_turn(math.degrees(math.atan2(dx, dy)))))
    edges.sort(key=lambda e: -e[0])
    return [bearing for _, bearing in edges]


def candidate_orientations(
    ring: Sequence[LocalPoint],
    latitude: float,
    solar_enabled: bool,
    step_degrees: float = 10.0,
) -> list[float]:
    """
    Orientations to try, as bearings in [0, 180).

    With solar constraints: the suggested solar orientations plus every
    boundary edge bearing inside the allowed window. Without: a regular
    sweep plus the bearing of the longest boundary edge.
    """
    if solar_enabled:
        candidates = list(suggested_orientations(latitude))
        candidates += [b for b in edge_bearings(ring) if is_orientation_valid(b, latitude)]
    else:
        step = step_degrees if step_degrees > 0 else 10.0
        candidates = [i * step for i in range(math.ceil(180.0 / step - 1e-9))]
        candidates += edge_bearings(ring)[:1]

    result: list[float] = []
    for angle in candidates:
        normalized = _normalize_half_turn(angle)
        if all(abs(normalized - seen) > 1e-6 for seen in result):
            result.append(normalized)
    return result


def grid_step(spec: StructureSpec, extent_m: float) -> float:
    """
    Occupancy grid step dividing both block dimensions.

    Starts at the greatest common divisor of the block sizes (centimetre
    precision), halves it down to about a metre and coarsens it again while
    the grid over ``extent_m`` would exceed ``MAX_GRID_CELLS``.
    """
    base = math.gcd(round(spec.block_width * 100), round(spec.block_height * 100)) / 100.0
    step = base
    while step > MAX_FINE_STEP_M:
        step /= 2.0
    while (extent_m / step) ** 2 > MAX_GRID_CELLS and step * 2 <= base + 1e-9:
        step *= 2.0
    return step


# =============================================================================
# Optimizer
# =============================================================================


class PackingOptimizer:
    """
    Multi-tier greedy polyhouse placement.

    Usage:
        optimizer = PackingOptimizer(spec, time_budget_s=30)
        outcome = optimizer.optimize(ring, zones, orientations)
    """

    def __init__(
        self,
        spec: StructureSpec,
        time_budget_s: Optional[float] = 60.0,
        max_iterations: Optional[int] = None,
        area_budget_sqm: Optional[float] = None,
        workers: int = 1,
    ):
        spec.validate()
        self.spec = spec
        self.time_budget_s = time_budget_s
        self.max_iterations = max_iterations
        self.area_budget_sqm = area_budget_sqm
        self.workers = max(1, workers)

        self._along_counts = spec.block_counts(spec.block_height)
        self._across_counts = spec.block_counts(spec.block_width)

    def tiers(self) -> list[PlacementTier]:
        """Large, medium and small tiers; duplicates of an earlier floor are dropped."""
        spec = self.spec
        floors = [
            ("large", (spec.min_side + spec.max_side) / 2.0),
            ("medium", spec.min_side + (spec.max_side - spec.min_side) / 4.0),
            ("small", spec.min_side),
        ]
        tiers: list[PlacementTier] = []
        for name, floor in floors:
            if tiers and floor >= tiers[-1].min_short_side - 1e-9:
                continue
            tiers.append(PlacementTier(name=name, min_short_side=floor))
        return tiers

    def optimize(
        self,
        boundary: Sequence[LocalPoint],
        zones: Sequence[RestrictedZone] = (),
        orientations: Sequence[float] = (0.0,),
        progress: Optional[ProgressCallback] = None,
    ) -> PackingOutcome:
        """
        Place structures over the boundary.

        Args:
            boundary: Parcel ring in local metres
            zones: Restricted zones to keep clear (with gutter)
            orientations: Candidate bearings in degrees
            progress: Optional callback receiving PackingProgress events

        Returns:
            PackingOutcome; never raises for unplaceable parcels
        """
        budget = _Budget(self.time_budget_s, self.max_iterations)
        ring = [LocalPoint(x, y) for x, y in ensure_ccw(boundary)]
        zone_rings = [list(z.polygon) for z in zones if len(z.polygon) >= 3]
        angles = [_normalize_half_turn(a) for a in orientations]
        arena = StructureArena(self.spec.gap, cell_size=self.spec.max_side + self.spec.gap)

        def outcome(reason: TerminationReason, tier_orientations=None) -> PackingOutcome:
            return PackingOutcome(
                structures=list(arena.structures),
                termination_reason=reason,
                orientations_tried=angles,
                tier_orientations=tier_orientations or {},
                iterations=budget.iterations,
                elapsed_seconds=budget.elapsed,
            )

        if not angles:
            logger.info("No candidate orientations, nothing to place")
            return outcome(TerminationReason.NO_VALID_ORIENTATION)

        if not self._along_counts or not self._across_counts:
            logger.warning(
                f"No whole number of {self.spec.block_width}x{self.spec.block_height}m blocks "
                f"fits within [{self.spec.min_side}, {self.spec.max_side}]m"
            )
            return outcome(TerminationReason.AREA_TOO_SMALL)

        if polygon_area(ring) < self.spec.min_side ** 2:
            logger.info("Parcel smaller than one minimum structure")
            return outcome(TerminationReason.AREA_TOO_SMALL)

        min_x, min_y, max_x, max_y = bounding_box(ring)
        step = grid_step(self.spec, math.hypot(max_x - min_x, max_y - min_y))
        grids: dict[float, _OrientationGrid] = {}

        logger.info(
            f"Packing: {len(angles)} orientations, {len(zone_rings)} zones, grid step {step}m"
        )

        tier_orientations: dict[str, Optional[float]] = {}
        any_free = False
        reason = TerminationReason.EXHAUSTED

        executor = ThreadPoolExecutor(max_workers=self.workers) if self.workers > 1 and len(angles) > 1 else None
        try:
            tiers = self.tiers()
            for tier_index, tier in enumerate(tiers):
                if budget.expired():
                    reason = TerminationReason.TIMEOUT
                    break

                snapshot = arena.structures

                def evaluate(angle: float) -> _OrientationResult:
                    grid = grids.get(angle)
                    if grid is None:
                        grid = _OrientationGrid(angle, ring, zone_rings, self.spec, step)
                        grids[angle] = grid
                    return self._fill_orientation(grid, tier, snapshot, budget, arena.total_area)

                if executor is not None:
                    results = list(executor.map(evaluate, angles))
                else:
                    results = [evaluate(angle) for angle in angles]

                for done, result in enumerate(results, start=1):
                    any_free = any_free or result.free_cells > 0
                    if progress:
                        progress(PackingProgress(
                            tier=tier.name,
                            orientation_degrees=result.angle,
                            structures_placed=len(arena) + len(result.rects),
                            placed_area_sqm=arena.total_area + result.area,
                            message=f"{tier.name} tier at {result.angle:g}°: {len(result.rects)} candidates",
                            fraction_complete=(tier_index + done / len(results)) / len(tiers),
                        ))

                best = max(results, key=lambda r: r.area)
                if best.rects:
                    tier_orientations[tier.name] = best.angle
                    self._commit(grids[best.angle], best, tier, arena)
                else:
                    tier_orientations[tier.name] = None

                logger.info(
                    f"Tier {tier.name}: {len(best.rects)} structures at {best.angle:g}°, "
                    f"total {len(arena)} structures, {arena.total_area:.0f} m²"
                )
                if progress:
                    progress(PackingProgress(
                        tier=tier.name,
                        orientation_degrees=best.angle if best.rects else None,
                        structures_placed=len(arena),
                        placed_area_sqm=arena.total_area,
                        message=f"{tier.name} tier complete",
                        fraction_complete=(tier_index + 1) / len(tiers),
                    ))

                if best.timed_out or any(r.timed_out for r in results):
                    reason = TerminationReason.TIMEOUT
                    break
                if best.area_budget_reached:
                    reason = TerminationReason.AREA_BUDGET_REACHED
                    break
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        if reason == TerminationReason.EXHAUSTED and not len(arena):
            reason = TerminationReason.AREA_TOO_SMALL if any_free else TerminationReason.NO_VALID_ORIENTATION

        logger.info(
            f"Packing finished ({reason.value}): {len(arena)} structures, "
            f"{arena.total_area:.0f} m² in {budget.elapsed:.2f}s"
        )
        return outcome(reason, tier_orientations)

    # =========================================================================
    # Greedy fill for one orientation
    # =========================================================================

    def _fill_orientation(
        self,
        grid: _OrientationGrid,
        tier: PlacementTier,
        accepted: Sequence[PlacedStructure],
        budget: _Budget,
        accepted_area: float,
    ) -> _OrientationResult:
        """Run the greedy scan for one orientation against a private occupancy copy."""
        spec = self.spec
        blocked = grid.static_blocked.copy()
        for structure in accepted:
            grid.block_structure(structure.footprint, spec.gap, blocked)

        result = _OrientationResult(
            angle=grid.angle, rects=[], area=0.0, free_cells=int((~blocked).sum())
        )
        if result.free_cells == 0:
            return result

        rows_per_block = round(spec.block_height / grid.step)
        cols_per_block = round(spec.block_width / grid.step)
        gap_cells = math.ceil(spec.gap / grid.step - 1e-9)
        max_along = self._along_counts.stop - 1
        max_across = self._across_counts.stop - 1
        window_rows = max_along * rows_per_block
        window_cols = max_across * cols_per_block

        cache: dict[tuple[int, int], Optional[_Rect]] = {}

        while True:
            if not budget.tick():
                result.timed_out = True
                break

            sat = np.zeros((grid.rows + 1, grid.cols + 1), dtype=np.int64)
            sat[1:, 1:] = blocked.cumsum(axis=0).cumsum(axis=1)

            free = ~blocked
            left_blocked = np.ones_like(blocked)
            left_blocked[:, 1:] = blocked[:, :-1]
            below_blocked = np.ones_like(blocked)
            below_blocked[1:, :] = blocked[:-1, :]
            anchors = set(zip(*np.nonzero(free & left_blocked & below_blocked)))

            for key in list(cache):
                if key not in anchors:
                    del cache[key]
            for row, col in anchors:
                if (row, col) not in cache:
                    cache[(row, col)] = self._grow(
                        sat, int(row), int(col), grid.rows, grid.cols,
                        rows_per_block, cols_per_block, tier.min_short_side,
                    )

            candidates = [rect for rect in cache.values() if rect is not None]
            if not candidates:
                break

            centroid_u = float(grid.centre_u[free].mean())
            centroid_v = float(grid.centre_v[free].mean())
            half_w = cols_per_block * grid.step / 2.0
            half_h = rows_per_block * grid.step / 2.0

            def rank(rect: _Rect):
                cu = grid.origin_u + rect.col * grid.step + rect.n_across * half_w
                cv = grid.origin_v + rect.row * grid.step + rect.n_along * half_h
                return (-round(rect.area, 6), math.hypot(cu - centroid_u, cv - centroid_v), rect.row, rect.col)

            chosen = min(candidates, key=rank)
            result.rects.append(chosen)
            result.area += chosen.area

            r0 = max(0, chosen.row - gap_cells)
            r1 = min(grid.rows, chosen.row + chosen.n_along * rows_per_block + gap_cells)
            c0 = max(0, chosen.col - gap_cells)
            c1 = min(grid.cols, chosen.col + chosen.n_across * cols_per_block + gap_cells)
            blocked[r0:r1, c0:c1] = True

            for row, col in list(cache):
                if row < r1 and row + window_rows > r0 and col < c1 and col + window_cols > c0:
                    del cache[(row, col)]

            if self.area_budget_sqm is not None and accepted_area + result.area >= self.area_budget_sqm:
                result.area_budget_reached = True
                break

        return result

    def _grow(
        self,
        sat: np.ndarray,
        row: int,
        col: int,
        rows: int,
        cols: int,
        rows_per_block: int,
        cols_per_block: int,
        min_short_side: float,
    ) -> Optional[_Rect]:
        """
        Largest rectangle anchored at (row, col).

        Extends one block at a time along the structure axis while shrinking
        the across extent to the widest fully free run of blocks.
        """
        spec = self.spec
        max_along = min(self._along_counts.stop - 1, (rows - row) // rows_per_block)
        across = min(self._across_counts.stop - 1, (cols - col) // cols_per_block)
        min_across = self._across_counts.start
        min_along = self._along_counts.start
        if across < min_across or max_along < min_along:
            return None

        def blocked_cells(r1: int, c1: int) -> int:
            return int(sat[r1, c1] - sat[row, c1] - sat[r1, col] + sat[row, col])

        best: Optional[_Rect] = None
        for along in range(1, max_along + 1):
            r1 = row + along * rows_per_block
            while across >= min_across and blocked_cells(r1, col + across * cols_per_block) > 0:
                across -= 1
            if across < min_across:
                break
            if along < min_along:
                continue

            length = along * spec.block_height
            n_across = across
            if spec.max_structure_area is not None:
                # Narrow the structure until it fits the per-structure area cap
                n_across = min(across, math.floor(spec.max_structure_area / (length * spec.block_width) + 1e-9))
                if n_across < min_across:
                    break
            width = n_across * spec.block_width
            if min(length, width) < min_short_side - 1e-9:
                continue
            area = length * width
            if best is None or area > best.area + 1e-9:
                best = _Rect(row=row, col=col, n_along=along, n_across=n_across, area=area)
        return best

    # =========================================================================
    # Commit
    # =========================================================================

    def _commit(
        self,
        grid: _OrientationGrid,
        result: _OrientationResult,
        tier: PlacementTier,
        arena: StructureArena,
    ) -> None:
        """Turn grid rectangles into structures and add them to the arena."""
        spec = self.spec
        for rect in result.rects:
            u0 = grid.origin_u + rect.col * grid.step
            v0 = grid.origin_v + rect.row * grid.step
            length_v = rect.n_along * spec.block_height
            width_u = rect.n_across * spec.block_width
            u1 = u0 + width_u
            v1 = v0 + length_v

            footprint = tuple(grid.from_frame(u, v) for u, v in rectangle(u0, v0, u1, v1))
            blocks = []
            for i in range(rect.n_along):
                bv0 = v0 + i * spec.block_height
                bv1 = bv0 + spec.block_height
                for j in range(rect.n_across):
                    bu0 = u0 + j * spec.block_width
                    bu1 = bu0 + spec.block_width
                    blocks.append(tuple(grid.from_frame(u, v) for u, v in rectangle(bu0, bv0, bu1, bv1)))

            structure = PlacedStructure(
                id=f"P{len(arena) + 1}",
                footprint=footprint,
                rotation_degrees=grid.angle,
                blocks=tuple(blocks),
                area=length_v * width_u,
                length_m=max(length_v, width_u),
                width_m=min(length_v, width_u),
                tier=tier.name,
                blocks_along=rect.n_along,
                blocks_across=rect.n_across,
            )
            if not arena.add(structure):
                logger.warning(f"Rejected {tier.name} structure at {grid.angle:g}°: gap violation")
