"""
Terrain constraint builder.

Samples the parcel on a regular grid, classifies each sample as buildable
or restricted (water, forest, road, steep slope) and aggregates restricted
samples into conservative exclusion zones.

Terrain is best-effort: when the data source fails after the retry bound
the builder returns a degraded analysis without zones and planning goes on.
"""
import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

import numpy as np
from scipy import ndimage

from polyplan.services.geometry import (
    bounding_box,
    buffer_convex,
    clip_polygon,
    points_in_polygon,
    polygon_area,
    rectangle,
)
from polyplan.services.projection import CoordinateProjector, GeoPoint, LocalPoint
from polyplan.services.terrain_sources import (
    BUILT_COVERS,
    FOREST_COVERS,
    WATER_COVERS,
    LandCover,
    TerrainDataSource,
    TerrainSourceError,
)

logger = logging.getLogger(__name__)


def _as_elevation(value) -> Optional[float]:
    """Elevation in metres, or None when the source value is missing or not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        elevation = float(value)
    except (TypeError, ValueError):
        return None
    return elevation if math.isfinite(elevation) else None


class ZoneKind(str, Enum):
    """Why an area is excluded from placement."""
    WATER = "water"
    FOREST = "forest"
    ROAD = "road"
    STEEP_SLOPE = "steep_slope"
    USER_DEFINED = "user_defined"


class ZoneSeverity(str, Enum):
    PROHIBITED = "prohibited"
    CHALLENGING = "challenging"
    WARNING = "warning"


@dataclass(frozen=True)
class RestrictedZone:
    """An exclusion region in local metres."""
    kind: ZoneKind
    polygon: tuple[LocalPoint, ...]
    severity: ZoneSeverity = ZoneSeverity.PROHIBITED
    area_sqm: float = 0.0
    sample_count: int = 0
    reason: str = ""


@dataclass
class TerrainAnalysis:
    """Outcome of terrain classification for one parcel."""
    restricted_zones: list[RestrictedZone] = field(default_factory=list)
    buildable_area_percentage: float = 100.0
    average_slope: float = 0.0
    elevation_range: Optional[tuple[float, float]] = None
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)
    sample_spacing_m: float = 0.0
    total_samples: int = 0
    buildable_samples: int = 0

    @classmethod
    def degraded_result(cls, reason: str, spacing: float = 0.0) -> "TerrainAnalysis":
        return cls(degraded=True, warnings=[reason], sample_spacing_m=spacing)


# Sample spacing in metres per resolution preset
RESOLUTION_SPACING_M = {
    "high": 10.0,
    "medium": 30.0,
    "low": 50.0,
}

# Share of parcel area above which a zone kind is called out in warnings
AREA_WARNING_THRESHOLD_PCT = 5.0

# Priority when several restrictions apply to one sample
_KIND_ORDER = (ZoneKind.WATER, ZoneKind.FOREST, ZoneKind.ROAD, ZoneKind.STEEP_SLOPE)

_FOUR_CONNECTED = ndimage.generate_binary_structure(2, 1)
_EIGHT_CONNECTED = ndimage.generate_binary_structure(2, 2)


class TerrainConstraintBuilder:
    """
    Turns elevation and land cover into restricted zones and statistics.

    Usage:
        builder = TerrainConstraintBuilder(source, max_slope=15)
        analysis = await builder.build(boundary, projector)
    """

    def __init__(
        self,
        source: TerrainDataSource,
        max_slope: float = 15.0,
        resolution: str = "auto",
        max_samples: int = 4000,
        timeout_s: float = 30.0,
        retries: int = 2,
        road_max_width_m: float = 25.0,
        road_min_elongation: float = 3.0,
    ):
        if resolution != "auto" and resolution not in RESOLUTION_SPACING_M:
            raise ValueError(f"Unknown terrain resolution: {resolution}")
        self.source = source
        self.max_slope = max_slope
        self.resolution = resolution
        self.max_samples = max(1, max_samples)
        self.timeout_s = timeout_s
        self.retries = max(0, retries)
        self.road_max_width_m = road_max_width_m
        self.road_min_elongation = road_min_elongation

    # =========================================================================
    # Sampling
    # =========================================================================

    def sample_spacing(self, ring: Sequence[LocalPoint]) -> float:
        """
        Grid spacing for a parcel.

        Presets give a fixed spacing; ``auto`` picks by parcel area. Either
        way the spacing is coarsened until the grid fits ``max_samples`` and
        refined so small parcels still get several samples across.
        """
        area = polygon_area(ring)
        if self.resolution == "auto":
            if area > 300_000:
                spacing = 50.0
            elif area > 100_000:
                spacing = 30.0
            elif area > 10_000:
                spacing = 20.0
            else:
                spacing = 10.0
        else:
            spacing = RESOLUTION_SPACING_M[self.resolution]

        min_x, min_y, max_x, max_y = bounding_box(ring)
        width = max_x - min_x
        height = max_y - min_y

        spacing = min(spacing, max(min(width, height) / 4.0, 1.0))
        while math.ceil(width / spacing) * math.ceil(height / spacing) > self.max_samples:
            spacing *= 1.25
        return spacing

    @staticmethod
    def sample_grid(ring: Sequence[LocalPoint], spacing: float) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Cell-centred sample grid over the ring's bounding box.

        Returns:
            Tuple of (X, Y, inside) arrays of shape (rows, cols)
        """
        min_x, min_y, max_x, max_y = bounding_box(ring)
        cols = max(1, math.ceil((max_x - min_x) / spacing))
        rows = max(1, math.ceil((max_y - min_y) / spacing))
        xs = min_x + (np.arange(cols) + 0.5) * spacing
        ys = min_y + (np.arange(rows) + 0.5) * spacing
        grid_x, grid_y = np.meshgrid(xs, ys)
        inside = points_in_polygon(grid_x, grid_y, ring)
        return grid_x, grid_y, inside

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def build(
        self,
        boundary: Sequence[GeoPoint],
        projector: CoordinateProjector,
    ) -> TerrainAnalysis:
        """
        Sample, fetch and classify terrain for a parcel.

        Args:
            boundary: Parcel ring in geographic coordinates
            projector: Projector centred on the parcel

        Returns:
            TerrainAnalysis; ``degraded`` is set when data was unavailable
        """
        ring = projector.to_local_many(boundary)
        spacing = self.sample_spacing(ring)
        grid_x, grid_y, inside = self.sample_grid(ring, spacing)

        if not inside.any():
            logger.warning("No terrain samples fall inside the parcel")
            return TerrainAnalysis.degraded_result(
                "Parcel is smaller than the terrain sample spacing", spacing
            )

        rows, cols = np.nonzero(inside)
        points = [
            projector.to_geo(LocalPoint(float(grid_x[r, c]), float(grid_y[r, c])))
            for r, c in zip(rows, cols)
        ]
        logger.info(
            f"Sampling terrain: {len(points)} points at {spacing:.1f}m spacing "
            f"from {self.source.name} source"
        )

        try:
            elevations, covers = await self._fetch(points)
        except Exception as e:
            logger.warning(f"Terrain data unavailable, continuing without terrain constraints: {e}")
            return TerrainAnalysis.degraded_result(
                "Terrain data unavailable; layout ignores terrain constraints", spacing
            )

        elevation_grid = np.full(inside.shape, np.nan)
        cover_grid = np.full(inside.shape, LandCover.UNKNOWN.value, dtype=object)
        unreadable = 0
        for r, c, elevation, cover in zip(rows, cols, elevations, covers):
            value = _as_elevation(elevation)
            if value is None and elevation is not None:
                unreadable += 1
            if value is not None:
                elevation_grid[r, c] = value
            cover_grid[r, c] = LandCover(cover).value
        if unreadable:
            logger.warning(f"Ignoring {unreadable} unreadable elevation values from {self.source.name} source")

        return self.analyze(ring, grid_x, grid_y, inside, elevation_grid, cover_grid, spacing)

    async def _fetch(self, points: list[GeoPoint]) -> tuple[list[Optional[float]], list[LandCover]]:
        """
        Fetch samples off the event loop with a bounded retry count and timeout.

        The timeout only stops waiting: a thread stuck inside a source keeps
        running until the source returns, and a retry starts a new thread.
        Sources doing I/O must bound their own calls (HttpElevationSource
        takes ``timeout_s`` for this).
        """
        last_error: Optional[BaseException] = None
        attempts = self.retries + 1

        for attempt in range(1, attempts + 1):
            try:
                elevations, covers = await asyncio.wait_for(
                    asyncio.to_thread(self.source.fetch_samples, points),
                    timeout=self.timeout_s,
                )
                if len(elevations) != len(points) or len(covers) != len(points):
                    raise TerrainSourceError(
                        f"Source returned {len(elevations)} elevations and {len(covers)} covers "
                        f"for {len(points)} points"
                    )
                return elevations, covers
            except asyncio.TimeoutError:
                last_error = TerrainSourceError(f"Terrain fetch timed out after {self.timeout_s}s")
                logger.warning(f"Terrain fetch attempt {attempt}/{attempts} timed out")
            except Exception as e:
                last_error = e
                logger.warning(f"Terrain fetch attempt {attempt}/{attempts} failed: {e}")

        raise TerrainSourceError(f"Terrain fetch failed after {attempts} attempts") from last_error

    # =========================================================================
    # Classification
    # =========================================================================

    def analyze(
        self,
        ring: Sequence[LocalPoint],
        grid_x: np.ndarray,
        grid_y: np.ndarray,
        inside: np.ndarray,
        elevation_grid: np.ndarray,
        cover_grid: np.ndarray,
        spacing: float,
    ) -> TerrainAnalysis:
        """
        Classify sampled terrain and build zones.

        Args:
            ring: Parcel ring in local metres
            grid_x, grid_y: Sample centres, shape (rows, cols)
            inside: True for samples inside the parcel
            elevation_grid: Elevations in metres, NaN where unknown
            cover_grid: Land cover values (``LandCover.value`` strings)
            spacing: Sample spacing in metres

        Returns:
            TerrainAnalysis with zones, statistics and warnings
        """
        total = int(inside.sum())
        valid = inside & np.isfinite(elevation_grid)
        if not valid.any():
            logger.warning("Terrain source returned no elevations inside the parcel")
            return TerrainAnalysis.degraded_result(
                "No elevation data inside the parcel; layout ignores terrain constraints", spacing
            )

        dem = self._fill_nodata(np.where(valid, elevation_grid, np.nan))
        slope = self._compute_slope(dem, spacing)

        water = inside & np.isin(cover_grid, [c.value for c in WATER_COVERS])
        forest = inside & np.isin(cover_grid, [c.value for c in FOREST_COVERS]) & ~water
        built = inside & np.isin(cover_grid, [c.value for c in BUILT_COVERS])
        road = self._detect_roads(built, spacing) & ~water & ~forest
        steep = inside & (slope > self.max_slope) & ~water & ~forest & ~road

        masks = {
            ZoneKind.WATER: water,
            ZoneKind.FOREST: forest,
            ZoneKind.ROAD: road,
            ZoneKind.STEEP_SLOPE: steep,
        }
        restricted = water | forest | road | steep
        buildable = int((inside & ~restricted).sum())

        zones: list[RestrictedZone] = []
        for kind in _KIND_ORDER:
            zones.extend(self._build_zones(kind, masks[kind], grid_x, grid_y, slope, ring, spacing))

        inside_elevations = elevation_grid[valid]
        analysis = TerrainAnalysis(
            restricted_zones=zones,
            buildable_area_percentage=buildable / total * 100.0 if total else 0.0,
            average_slope=float(slope[inside].mean()),
            elevation_range=(float(inside_elevations.min()), float(inside_elevations.max())),
            degraded=False,
            sample_spacing_m=spacing,
            total_samples=total,
            buildable_samples=buildable,
        )
        analysis.warnings = self._warnings(masks, built & ~road, total, zones)

        logger.info(
            f"Terrain analysis: {len(zones)} zones, "
            f"{analysis.buildable_area_percentage:.1f}% buildable, "
            f"average slope {analysis.average_slope:.1f}°"
        )
        return analysis

    @staticmethod
    def _fill_nodata(array: np.ndarray) -> np.ndarray:
        """Fill NaN cells with the nearest valid value (distance transform)."""
        mask = np.isnan(array)
        if not mask.any():
            return array
        indices = ndimage.distance_transform_edt(mask, return_distances=False, return_indices=True)
        return array[tuple(indices)]

    @staticmethod
    def _compute_slope(dem: np.ndarray, spacing: float) -> np.ndarray:
        """Slope in degrees from finite differences of the elevation grid."""
        rows, cols = dem.shape
        dy = np.gradient(dem, spacing, axis=0) if rows > 1 else np.zeros_like(dem)
        dx = np.gradient(dem, spacing, axis=1) if cols > 1 else np.zeros_like(dem)
        return np.degrees(np.arctan(np.sqrt(dx ** 2 + dy ** 2)))

    def _detect_roads(self, built: np.ndarray, spacing: float) -> np.ndarray:
        """
        Built-up clusters that are narrow and elongated.

        Length and width come from the spread of the cluster along its
        principal axes, padded by one sample.
        """
        roads = np.zeros_like(built)
        labels, count = ndimage.label(built, structure=_EIGHT_CONNECTED)
        for index, bbox in enumerate(ndimage.find_objects(labels), start=1):
            if bbox is None:
                continue
            cluster = labels[bbox] == index
            rows, cols = np.nonzero(cluster)
            if len(rows) < 3:
                continue
            coords = np.column_stack([cols, rows]).astype(float) * spacing
            centered = coords - coords.mean(axis=0)
            _, vectors = np.linalg.eigh(np.cov(centered, rowvar=False))
            projected = centered @ vectors
            extents = projected.max(axis=0) - projected.min(axis=0) + spacing
            width, length = float(extents.min()), float(extents.max())
            if width <= self.road_max_width_m and length / width >= self.road_min_elongation:
                roads[bbox] |= cluster
        return roads

    def _build_zones(
        self,
        kind: ZoneKind,
        mask: np.ndarray,
        grid_x: np.ndarray,
        grid_y: np.ndarray,
        slope: np.ndarray,
        ring: Sequence[LocalPoint],
        spacing: float,
    ) -> list[RestrictedZone]:
        """Flood-fill clusters of one kind into buffered convex zones."""
        zones = []
        labels, count = ndimage.label(mask, structure=_FOUR_CONNECTED)
        if count == 0:
            return zones

        half = spacing / 2.0
        for index in range(1, count + 1):
            cluster = labels == index
            sample_count = int(cluster.sum())
            rows, cols = np.nonzero(cluster)
            corners = []
            for r, c in zip(rows, cols):
                x = float(grid_x[r, c])
                y = float(grid_y[r, c])
                corners.extend(rectangle(x - half, y - half, x + half, y + half))
            # One sample spacing beyond the cells of the cluster
            hull = buffer_convex(corners, spacing)

            clipped = clip_polygon(ring, hull)
            area = polygon_area(clipped) if len(clipped) >= 3 else 0.0

            severity = ZoneSeverity.PROHIBITED
            reason = f"{kind.value.replace('_', ' ')} detected from terrain data"
            if kind == ZoneKind.STEEP_SLOPE:
                mean_slope = float(slope[cluster].mean())
                if mean_slope <= 2 * self.max_slope:
                    severity = ZoneSeverity.CHALLENGING
                reason = f"mean slope {mean_slope:.1f}° exceeds {self.max_slope:.1f}°"

            zones.append(RestrictedZone(
                kind=kind,
                polygon=tuple(LocalPoint(x, y) for x, y in hull),
                severity=severity,
                area_sqm=area,
                sample_count=sample_count,
                reason=reason,
            ))
        return zones

    @staticmethod
    def _warnings(
        masks: dict[ZoneKind, np.ndarray],
        compact_built: np.ndarray,
        total: int,
        zones: list[RestrictedZone],
    ) -> list[str]:
        warnings = []
        if total == 0:
            return warnings

        for kind in _KIND_ORDER:
            kind_zones = [z for z in zones if z.kind == kind]
            if not kind_zones:
                continue
            label = kind.value.replace("_", " ")
            warnings.append(f"{len(kind_zones)} {label} zone(s) detected")
            share = masks[kind].sum() / total * 100.0
            if share >= AREA_WARNING_THRESHOLD_PCT:
                warnings.append(f"{share:.0f}% of area covered by {label}")

        built_share = compact_built.sum() / total * 100.0
        if built_share >= AREA_WARNING_THRESHOLD_PCT:
            warnings.append(f"{built_share:.0f}% of area is built-up; verify structures on site")
        return warnings
