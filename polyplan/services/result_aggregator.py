"""
Result aggregation.

Converts placed structures back to geographic coordinates, computes
coverage statistics and classifies how neighbouring structures meet.

Connection classification works on shared edges: two footprint edges
facing each other across no more than the structure gap. At each end of
the shared stretch:
- both edges end there: the structures line up (180°)
- only one edge ends there: one structure steps past the other (270°)
Footprint corners not consumed by a shared edge are plain 90° corners.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Sequence

from shapely.geometry import Polygon, mapping

from polyplan.services.geometry import bounding_box
from polyplan.services.packing_optimizer import PlacedStructure
from polyplan.services.projection import (
    CoordinateProjector,
    GeoPoint,
    LocalPoint,
    polygon_area_sqm,
)
from polyplan.services.terrain_constraints import RestrictedZone

logger = logging.getLogger(__name__)

SQM_PER_HECTARE = 10_000.0
SQM_PER_ACRE = 4046.8564224

# Extra separation on top of the gap still counted as adjacent
ADJACENCY_TOLERANCE_M = 0.5
_PARALLEL_COS = 0.999
_END_TOLERANCE_M = 1e-3


@dataclass(frozen=True)
class GeoStructure:
    """A placed structure in geographic coordinates."""
    id: str
    footprint: tuple[GeoPoint, ...]
    blocks: tuple[tuple[GeoPoint, ...], ...]
    rotation_degrees: float
    area_sqm: float
    length_m: float
    width_m: float
    tier: str


@dataclass(frozen=True)
class GeoZone:
    """A restricted zone in geographic coordinates."""
    kind: str
    severity: str
    polygon: tuple[GeoPoint, ...]
    area_sqm: float
    reason: str = ""


@dataclass(frozen=True)
class SharedEdge:
    """Two structures facing each other along an edge."""
    structure_a: str
    structure_b: str
    length_m: float
    separation_m: float
    adjacent_blocks: int


@dataclass
class ConnectionStats:
    """Corner categories across the whole layout."""
    angle_90: int = 0
    angle_180: int = 0
    angle_270: int = 0
    shared_edges: list[SharedEdge] = field(default_factory=list)


@dataclass
class AggregatedResult:
    structures: list[GeoStructure]
    zones: list[GeoZone]
    coverage_percentage: float
    boundary_area_sqm: float
    total_structure_area_sqm: float
    total_blocks: int
    connection_stats: ConnectionStats

    @property
    def total_structure_area_hectares(self) -> float:
        return self.total_structure_area_sqm / SQM_PER_HECTARE

    @property
    def total_structure_area_acres(self) -> float:
        return self.total_structure_area_sqm / SQM_PER_ACRE


class ResultAggregator:
    """Turns optimizer output into a geographic, reportable result."""

    def __init__(self, projector: CoordinateProjector, adjacency_tolerance_m: float = ADJACENCY_TOLERANCE_M):
        self.projector = projector
        self.adjacency_tolerance_m = adjacency_tolerance_m

    def aggregate(
        self,
        boundary: Sequence[GeoPoint],
        structures: Sequence[PlacedStructure],
        zones: Sequence[RestrictedZone],
        gap: float,
        block_width: float,
        block_height: float,
    ) -> AggregatedResult:
        """
        Convert and summarise a layout.

        Args:
            boundary: Parcel ring in geographic coordinates
            structures: Accepted structures in local metres
            zones: Restricted zones in local metres
            gap: Structure gap in metres (bounds shared-edge separation)
            block_width: Block size along the structure's across axis
            block_height: Block size along the structure's along axis

        Returns:
            AggregatedResult
        """
        boundary_area = polygon_area_sqm(boundary)
        total_area = sum(s.area for s in structures)
        coverage = total_area / boundary_area * 100.0 if boundary_area > 0 else 0.0

        geo_structures = [
            GeoStructure(
                id=s.id,
                footprint=tuple(self.projector.to_geo_many(s.footprint)),
                blocks=tuple(tuple(self.projector.to_geo_many(b)) for b in s.blocks),
                rotation_degrees=s.rotation_degrees,
                area_sqm=s.area,
                length_m=s.length_m,
                width_m=s.width_m,
                tier=s.tier,
            )
            for s in structures
        ]
        geo_zones = [
            GeoZone(
                kind=z.kind.value,
                severity=z.severity.value,
                polygon=tuple(self.projector.to_geo_many(z.polygon)),
                area_sqm=z.area_sqm,
                reason=z.reason,
            )
            for z in zones
        ]

        stats = classify_connections(
            structures, gap + self.adjacency_tolerance_m, block_width, block_height
        )
        logger.info(
            f"Aggregated {len(structures)} structures: coverage {coverage:.1f}%, "
            f"{len(stats.shared_edges)} shared edges"
        )
        return AggregatedResult(
            structures=geo_structures,
            zones=geo_zones,
            coverage_percentage=coverage,
            boundary_area_sqm=boundary_area,
            total_structure_area_sqm=total_area,
            total_blocks=sum(len(s.blocks) for s in structures),
            connection_stats=stats,
        )


# =============================================================================
# Connection classification
# =============================================================================


def _edge_frame(a: LocalPoint, b: LocalPoint, ccw: bool):
    dx = b[0] - a[0]
    dy = b[1] - a[1]
    length = math.hypot(dx, dy)
    tx, ty = dx / length, dy / length
    # Outward normal is to the right of a CCW edge
    nx, ny = (ty, -tx) if ccw else (-ty, tx)
    return length, (tx, ty), (nx, ny)


def _is_ccw(ring: Sequence[LocalPoint]) -> bool:
    total = 0.0
    for i in range(len(ring)):
        x1, y1 = ring[i]
        x2, y2 = ring[(i + 1) % len(ring)]
        total += x1 * y2 - x2 * y1
    return total > 0


def classify_connections(
    structures: Sequence[PlacedStructure],
    max_separation: float,
    block_width: float,
    block_height: float,
) -> ConnectionStats:
    """
    Count 90/180/270 degree corners and list shared edges.

    Edge i of a footprint runs across the structure for even i (block
    width) and along it for odd i (block height).
    """
    stats = ConnectionStats()
    consumed: set[tuple[int, int]] = set()

    boxes = [bounding_box(s.footprint) for s in structures]
    for ia in range(len(structures)):
        for ib in range(ia + 1, len(structures)):
            ax0, ay0, ax1, ay1 = boxes[ia]
            bx0, by0, bx1, by1 = boxes[ib]
            if (ax0 > bx1 + max_separation or bx0 > ax1 + max_separation
                    or ay0 > by1 + max_separation or by0 > ay1 + max_separation):
                continue
            _classify_pair(structures, ia, ib, max_separation, block_width, block_height, stats, consumed)

    total_corners = 4 * len(structures)
    stats.angle_90 = total_corners - len(consumed)
    return stats


def _classify_pair(structures, ia, ib, max_separation, block_width, block_height, stats, consumed) -> None:
    a = structures[ia]
    b = structures[ib]
    ring_a = a.footprint
    ring_b = b.footprint
    ccw_a = _is_ccw(ring_a)
    ccw_b = _is_ccw(ring_b)

    for ea in range(4):
        a0, a1 = ring_a[ea], ring_a[(ea + 1) % 4]
        len_a, (tx, ty), (nx, ny) = _edge_frame(a0, a1, ccw_a)
        for eb in range(4):
            b0, b1 = ring_b[eb], ring_b[(eb + 1) % 4]
            _, _, (mx, my) = _edge_frame(b0, b1, ccw_b)
            if nx * mx + ny * my > -_PARALLEL_COS:
                continue

            # B's edge must sit in front of A's edge within the separation
            sep0 = (b0[0] - a0[0]) * nx + (b0[1] - a0[1]) * ny
            sep1 = (b1[0] - a0[0]) * nx + (b1[1] - a0[1]) * ny
            if min(sep0, sep1) < -_END_TOLERANCE_M or max(sep0, sep1) > max_separation:
                continue

            t0 = (b0[0] - a0[0]) * tx + (b0[1] - a0[1]) * ty
            t1 = (b1[0] - a0[0]) * tx + (b1[1] - a0[1]) * ty
            b_lo, b_hi = min(t0, t1), max(t0, t1)
            lo = max(0.0, b_lo)
            hi = min(len_a, b_hi)
            if hi - lo <= _END_TOLERANCE_M:
                continue

            # Corners of each edge at the overlap ends
            a_lo_corner = ea if abs(lo) <= _END_TOLERANCE_M else None
            a_hi_corner = (ea + 1) % 4 if abs(hi - len_a) <= _END_TOLERANCE_M else None
            b_lo_index = eb if t0 <= t1 else (eb + 1) % 4
            b_hi_index = (eb + 1) % 4 if t0 <= t1 else eb
            b_lo_corner = b_lo_index if abs(lo - b_lo) <= _END_TOLERANCE_M else None
            b_hi_corner = b_hi_index if abs(hi - b_hi) <= _END_TOLERANCE_M else None

            for a_corner, b_corner in ((a_lo_corner, b_lo_corner), (a_hi_corner, b_hi_corner)):
                if a_corner is not None and b_corner is not None:
                    stats.angle_180 += 1
                elif a_corner is not None or b_corner is not None:
                    stats.angle_270 += 1
                if a_corner is not None:
                    consumed.add((ia, a_corner))
                if b_corner is not None:
                    consumed.add((ib, b_corner))

            block_size = block_width if ea % 2 == 0 else block_height
            separation = (sep0 + sep1) / 2.0
            stats.shared_edges.append(SharedEdge(
                structure_a=a.id,
                structure_b=b.id,
                length_m=hi - lo,
                separation_m=separation,
                adjacent_blocks=int(math.floor((hi - lo) / block_size + 1e-6)),
            ))


# =============================================================================
# GeoJSON
# =============================================================================


def _geo_ring(points: Sequence[GeoPoint]) -> list[tuple[float, float]]:
    return [(p.lng, p.lat) for p in points]


def to_geojson_feature_collection(
    boundary: Sequence[GeoPoint],
    result: AggregatedResult,
    include_blocks: bool = False,
) -> dict[str, Any]:
    """
    Build a GeoJSON FeatureCollection for a layout.

    Args:
        boundary: Parcel ring
        result: Aggregated layout
        include_blocks: Emit one feature per block as well

    Returns:
        GeoJSON FeatureCollection dict (coordinates in lng/lat order)
    """
    features: list[dict[str, Any]] = [{
        "type": "Feature",
        "geometry": mapping(Polygon(_geo_ring(boundary))),
        "properties": {
            "feature_type": "boundary",
            "area_sqm": round(result.boundary_area_sqm, 2),
        },
    }]

    for zone in result.zones:
        features.append({
            "type": "Feature",
            "geometry": mapping(Polygon(_geo_ring(zone.polygon))),
            "properties": {
                "feature_type": "restricted_zone",
                "kind": zone.kind,
                "severity": zone.severity,
                "area_sqm": round(zone.area_sqm, 2),
                "reason": zone.reason,
            },
        })

    for structure in result.structures:
        features.append({
            "type": "Feature",
            "geometry": mapping(Polygon(_geo_ring(structure.footprint))),
            "properties": {
                "feature_type": "polyhouse",
                "id": structure.id,
                "tier": structure.tier,
                "rotation_degrees": structure.rotation_degrees,
                "area_sqm": round(structure.area_sqm, 2),
                "length_m": structure.length_m,
                "width_m": structure.width_m,
                "block_count": len(structure.blocks),
            },
        })
        if include_blocks:
            for index, block in enumerate(structure.blocks):
                features.append({
                    "type": "Feature",
                    "geometry": mapping(Polygon(_geo_ring(block))),
                    "properties": {
                        "feature_type": "block",
                        "structure_id": structure.id,
                        "index": index,
                    },
                })

    return {
        "type": "FeatureCollection",
        "features": features,
        "properties": {
            "coverage_percentage": round(result.coverage_percentage, 2),
            "structure_count": len(result.structures),
            "total_blocks": result.total_blocks,
        },
    }
