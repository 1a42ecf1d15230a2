"""
Polyhouse planning pipeline.

Runs one planning request end to end:
validate -> project -> terrain constraints -> packing -> aggregation.

Each request is independent; the service holds configuration and the
terrain source but no per-request state.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from polyplan.config import get_settings
from polyplan.services.geometry import bounding_box, convex_hull, is_simple, polygon_area
from polyplan.services.packing_optimizer import (
    PackingOptimizer,
    PackingProgress,
    PlacedStructure,
    StructureSpec,
    TerminationReason,
    candidate_orientations,
)
from polyplan.services.projection import CoordinateProjector, GeoPoint, LocalPoint
from polyplan.services.result_aggregator import (
    AggregatedResult,
    ConnectionStats,
    ResultAggregator,
)
from polyplan.services.terrain_constraints import (
    RESOLUTION_SPACING_M,
    RestrictedZone,
    TerrainAnalysis,
    TerrainConstraintBuilder,
    ZoneKind,
    ZoneSeverity,
)
from polyplan.services.terrain_sources import TerrainDataSource, build_terrain_source

logger = logging.getLogger(__name__)

# Rings below this area (m²) are treated as degenerate
MIN_BOUNDARY_AREA_SQM = 1e-6


class InvalidBoundaryError(ValueError):
    """Raised when a boundary cannot be planned on."""
    pass


class InvalidConfigurationError(ValueError):
    """Raised when sizing or spacing rules are inconsistent."""
    pass


@dataclass(frozen=True)
class UserExclusion:
    """A caller-drawn area to keep clear (well, tank, shed...)."""
    name: str
    coordinates: tuple[GeoPoint, ...]
    reason: str = ""


@dataclass
class PlanningConfig:
    """Per-request configuration."""
    min_side: float = 16.0
    max_side: float = 100.0
    gutter_width: float = 2.0
    gap: float = 2.0
    block_width: float = 8.0
    block_height: float = 4.0
    max_structure_area: Optional[float] = 10000.0
    solar_enabled: bool = True
    terrain_enabled: bool = True
    max_slope: float = 15.0
    terrain_resolution: str = "auto"
    land_leveling_override: bool = False
    avoid_water: bool = True
    ignore_restricted_zones: bool = False
    user_exclusions: list[UserExclusion] = field(default_factory=list)
    orientation_step_deg: float = 10.0
    time_budget_s: Optional[float] = None
    max_iterations: Optional[int] = None
    area_budget_sqm: Optional[float] = None

    @classmethod
    def from_settings(cls, **overrides) -> "PlanningConfig":
        """Defaults from application settings, with explicit overrides."""
        settings = get_settings()
        values = dict(
            min_side=settings.min_side_m,
            max_side=settings.max_side_m,
            gutter_width=settings.gutter_width_m,
            gap=settings.gap_m,
            block_width=settings.block_width_m,
            block_height=settings.block_height_m,
            max_structure_area=settings.max_structure_area_sqm,
            max_slope=settings.max_slope_deg,
            avoid_water=settings.avoid_water,
            terrain_resolution=settings.terrain_resolution,
            orientation_step_deg=settings.orientation_step_deg,
        )
        values.update(overrides)
        return cls(**values)

    @property
    def structure_spec(self) -> StructureSpec:
        return StructureSpec(
            min_side=self.min_side,
            max_side=self.max_side,
            gutter_width=self.gutter_width,
            gap=self.gap,
            block_width=self.block_width,
            block_height=self.block_height,
            max_structure_area=self.max_structure_area,
        )

    def validate(self) -> None:
        numbers = {
            "min_side": self.min_side,
            "max_side": self.max_side,
            "gutter_width": self.gutter_width,
            "gap": self.gap,
            "block_width": self.block_width,
            "block_height": self.block_height,
            "max_slope": self.max_slope,
        }
        for name, value in numbers.items():
            if not math.isfinite(value):
                raise InvalidConfigurationError(f"{name} must be finite")
        if self.max_structure_area is not None and not math.isfinite(self.max_structure_area):
            raise InvalidConfigurationError("max_structure_area must be finite")
        try:
            self.structure_spec.validate()
        except ValueError as e:
            raise InvalidConfigurationError(str(e)) from e
        if self.max_slope <= 0:
            raise InvalidConfigurationError("max_slope must be positive")
        if self.orientation_step_deg <= 0 or self.orientation_step_deg > 180:
            raise InvalidConfigurationError("orientation_step_deg must be in (0, 180]")
        if self.terrain_resolution != "auto" and self.terrain_resolution not in RESOLUTION_SPACING_M:
            raise InvalidConfigurationError(f"Unknown terrain resolution: {self.terrain_resolution}")


@dataclass
class PlanningResult:
    """Outcome of one planning request."""
    placed_structures: list[PlacedStructure]
    restricted_zones: list[RestrictedZone]
    buildable_area_percentage: float
    average_slope: float
    coverage_percentage: float
    termination_reason: TerminationReason
    degraded: bool
    aggregated: AggregatedResult
    elevation_range: Optional[tuple[float, float]] = None
    warnings: list[str] = field(default_factory=list)
    orientations_tried: list[float] = field(default_factory=list)
    latitude: float = 0.0
    elapsed_seconds: float = 0.0

    @property
    def connection_stats(self) -> ConnectionStats:
        return self.aggregated.connection_stats


ProgressHandler = Callable[[PackingProgress], None]


def normalize_boundary(points: Sequence[GeoPoint]) -> list[GeoPoint]:
    """
    Validate a boundary ring, dropping repeated vertices and the closing point.

    Raises:
        InvalidBoundaryError: If the ring is degenerate
    """
    ring = [p for i, p in enumerate(points) if i == 0 or p != points[i - 1]]
    while len(ring) >= 2 and ring[0] == ring[-1]:
        ring.pop()

    if len(ring) < 3:
        raise InvalidBoundaryError(f"Boundary needs at least 3 points, got {len(ring)}")
    for p in ring:
        if not p.is_finite():
            raise InvalidBoundaryError(f"Boundary has a non-finite coordinate: {p}")
        if not (-90.0 <= p.lat <= 90.0 and -180.0 <= p.lng <= 180.0):
            raise InvalidBoundaryError(f"Boundary coordinate out of range: {p}")
    if len(set(ring)) < 3:
        raise InvalidBoundaryError("Boundary needs at least 3 distinct points")

    projector = CoordinateProjector.for_boundary(ring)
    local = projector.to_local_many(ring)
    if polygon_area(local) < MIN_BOUNDARY_AREA_SQM:
        raise InvalidBoundaryError("Boundary has no area")
    if not is_simple(local):
        raise InvalidBoundaryError("Boundary intersects itself")
    return ring


class PolyhousePlanningService:
    """
    Plans polyhouse layouts.

    Usage:
        service = get_planning_service()
        result = await service.plan(boundary, PlanningConfig())
    """

    def __init__(
        self,
        terrain_source: Optional[TerrainDataSource] = None,
        optimizer_workers: Optional[int] = None,
    ):
        settings = get_settings()
        self.settings = settings
        self.terrain_source = terrain_source or build_terrain_source(
            dem_path=settings.dem_raster_path,
            land_cover_path=settings.land_cover_raster_path,
            elevation_api_url=settings.elevation_api_url,
            timeout_s=settings.terrain_fetch_timeout_s,
        )
        self.optimizer_workers = optimizer_workers or settings.optimizer_orientation_workers

    async def plan(
        self,
        boundary: Sequence[GeoPoint],
        config: Optional[PlanningConfig] = None,
        progress: Optional[ProgressHandler] = None,
    ) -> PlanningResult:
        """
        Plan a layout for a parcel.

        Args:
            boundary: Parcel ring in geographic coordinates
            config: Request configuration (settings defaults when omitted)
            progress: Optional callback receiving optimizer progress

        Returns:
            PlanningResult

        Raises:
            InvalidBoundaryError: For degenerate boundaries
            InvalidConfigurationError: For inconsistent sizing rules
        """
        started = time.monotonic()
        config = config or PlanningConfig.from_settings()
        config.validate()
        ring_geo = normalize_boundary(boundary)

        projector = CoordinateProjector.for_boundary(ring_geo)
        ring = projector.to_local_many(ring_geo)
        latitude = projector.centroid.lat

        logger.info(
            f"Planning parcel of {len(ring_geo)} points at lat {latitude:.4f}: "
            f"solar={config.solar_enabled}, terrain={config.terrain_enabled}"
        )

        if config.terrain_enabled:
            builder = TerrainConstraintBuilder(
                self.terrain_source,
                max_slope=config.max_slope,
                resolution=config.terrain_resolution,
                max_samples=self.settings.terrain_max_samples,
                timeout_s=self.settings.terrain_fetch_timeout_s,
                retries=self.settings.terrain_fetch_retries,
                road_max_width_m=self.settings.road_max_width_m,
                road_min_elongation=self.settings.road_min_elongation,
            )
            terrain = await builder.build(ring_geo, projector)
        else:
            terrain = TerrainAnalysis()

        zones = self._placement_zones(terrain, config, projector, ring)
        orientations = candidate_orientations(
            ring, latitude, config.solar_enabled, config.orientation_step_deg
        )

        optimizer = PackingOptimizer(
            config.structure_spec,
            time_budget_s=config.time_budget_s if config.time_budget_s is not None
            else self.settings.optimizer_time_budget_s,
            max_iterations=config.max_iterations if config.max_iterations is not None
            else self.settings.optimizer_max_iterations,
            area_budget_sqm=config.area_budget_sqm,
            workers=self.optimizer_workers,
        )
        outcome = await asyncio.to_thread(optimizer.optimize, ring, zones, orientations, progress)

        aggregator = ResultAggregator(projector)
        aggregated = aggregator.aggregate(
            ring_geo,
            outcome.structures,
            zones,
            gap=config.gap,
            block_width=config.block_width,
            block_height=config.block_height,
        )

        warnings = list(terrain.warnings)
        if outcome.termination_reason == TerminationReason.TIMEOUT:
            warnings.append("Optimization budget exhausted; layout is partial")
        elif not outcome.structures:
            warnings.append(f"No structures placed ({outcome.termination_reason.value})")

        elapsed = time.monotonic() - started
        logger.info(
            f"Planned {len(outcome.structures)} structures "
            f"({aggregated.coverage_percentage:.1f}% coverage, "
            f"{outcome.termination_reason.value}) in {elapsed:.2f}s"
        )

        return PlanningResult(
            placed_structures=outcome.structures,
            restricted_zones=zones,
            buildable_area_percentage=terrain.buildable_area_percentage,
            average_slope=terrain.average_slope,
            coverage_percentage=aggregated.coverage_percentage,
            termination_reason=outcome.termination_reason,
            degraded=terrain.degraded,
            aggregated=aggregated,
            elevation_range=terrain.elevation_range,
            warnings=warnings,
            orientations_tried=outcome.orientations_tried,
            latitude=latitude,
            elapsed_seconds=elapsed,
        )

    def plan_sync(
        self,
        boundary: Sequence[GeoPoint],
        config: Optional[PlanningConfig] = None,
        progress: Optional[ProgressHandler] = None,
    ) -> PlanningResult:
        """Blocking wrapper around :meth:`plan` for scripts."""
        return asyncio.run(self.plan(boundary, config, progress))

    @staticmethod
    def _placement_zones(
        terrain: TerrainAnalysis,
        config: PlanningConfig,
        projector: CoordinateProjector,
        ring: Sequence[LocalPoint],
    ) -> list[RestrictedZone]:
        """Terrain zones that apply under the config, plus user exclusions."""
        zones = []
        if not config.ignore_restricted_zones:
            for zone in terrain.restricted_zones:
                if zone.kind == ZoneKind.STEEP_SLOPE and config.land_leveling_override:
                    continue
                if zone.kind == ZoneKind.WATER and not config.avoid_water:
                    continue
                zones.append(zone)

        min_x, min_y, max_x, max_y = bounding_box(ring)
        for exclusion in config.user_exclusions:
            points = [p for p in exclusion.coordinates if p.is_finite()]
            if len(points) < 3:
                logger.warning(f"Skipping exclusion '{exclusion.name}': fewer than 3 valid points")
                continue
            local = projector.to_local_many(points)
            ex_min_x, ex_min_y, ex_max_x, ex_max_y = bounding_box(local)
            if ex_max_x < min_x or ex_min_x > max_x or ex_max_y < min_y or ex_min_y > max_y:
                logger.info(f"Exclusion '{exclusion.name}' lies outside the parcel")
                continue
            # Self-intersecting drawings are replaced by their hull
            polygon = local if is_simple(local) else convex_hull(local)
            zones.append(RestrictedZone(
                kind=ZoneKind.USER_DEFINED,
                polygon=tuple(LocalPoint(x, y) for x, y in polygon),
                severity=ZoneSeverity.PROHIBITED,
                area_sqm=polygon_area(polygon),
                reason=exclusion.reason or exclusion.name,
            ))
        return zones


_planning_service: Optional[PolyhousePlanningService] = None


def get_planning_service() -> PolyhousePlanningService:
    """Get or create the planning service singleton."""
    global _planning_service
    if _planning_service is None:
        _planning_service = PolyhousePlanningService()
    return _planning_service
