"""
Pydantic schemas for the planning API.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from polyplan.config import get_settings
from polyplan.services.planning_service import PlanningConfig, PlanningResult, UserExclusion
from polyplan.services.projection import GeoPoint
from polyplan.services.result_aggregator import to_geojson_feature_collection

_settings = get_settings()


# =============================================================================
# Requests
# =============================================================================


class Coordinate(BaseModel):
    """A WGS84 point."""
    lat: float = Field(..., ge=-90, le=90, description="Latitude in degrees")
    lng: float = Field(..., ge=-180, le=180, description="Longitude in degrees")

    def to_geo_point(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lng=self.lng)

    @classmethod
    def from_geo_point(cls, point: GeoPoint) -> "Coordinate":
        return cls(lat=point.lat, lng=point.lng)


class ExclusionZoneInput(BaseModel):
    """A user-drawn area to keep clear of structures."""
    name: str = Field(..., min_length=1, max_length=200, description="Label for the area")
    coordinates: list[Coordinate] = Field(..., min_length=3, description="Polygon ring")
    reason: str = Field(default="", max_length=500, description="Why the area is excluded")


class PlanningConfiguration(BaseModel):
    """Sizing, spacing and constraint options for a planning request."""

    min_side: float = Field(default=_settings.min_side_m, gt=0, description="Minimum structure side (m)")
    max_side: float = Field(default=_settings.max_side_m, gt=0, description="Maximum structure side (m)")
    gutter_width: float = Field(
        default=_settings.gutter_width_m, ge=0,
        description="Clearance from the boundary and restricted zones (m)",
    )
    gap: float = Field(default=_settings.gap_m, ge=0, description="Clearance between structures (m)")
    block_width: float = Field(default=_settings.block_width_m, gt=0, description="Block width (m)")
    block_height: float = Field(default=_settings.block_height_m, gt=0, description="Block height (m)")
    max_structure_area: Optional[float] = Field(
        default=_settings.max_structure_area_sqm, gt=0,
        description="Largest footprint of a single structure (m²); null for no cap",
    )
    solar_enabled: bool = Field(default=True, description="Restrict orientations by latitude")
    terrain_enabled: bool = Field(default=True, description="Exclude water, forest, roads and steep slopes")
    max_slope: float = Field(default=_settings.max_slope_deg, gt=0, le=90, description="Maximum buildable slope (°)")
    terrain_resolution: str = Field(
        default=_settings.terrain_resolution,
        pattern="^(auto|high|medium|low)$",
        description="Terrain sampling density",
    )
    land_leveling_override: bool = Field(
        default=False, description="Treat steep ground as buildable (land will be levelled)",
    )
    avoid_water: bool = Field(
        default=_settings.avoid_water, description="Keep structures off water bodies and wetlands",
    )
    ignore_restricted_zones: bool = Field(
        default=False, description="Ignore terrain-derived zones; user exclusions still apply",
    )
    user_exclusions: list[ExclusionZoneInput] = Field(default_factory=list)
    orientation_step_deg: float = Field(
        default=_settings.orientation_step_deg, gt=0, le=180,
        description="Sweep step when solar constraints are off (°)",
    )
    time_budget_s: Optional[float] = Field(default=None, gt=0, le=600, description="Optimizer wall-clock budget")
    max_iterations: Optional[int] = Field(default=None, gt=0, description="Optimizer scan-step budget")
    area_budget_sqm: Optional[float] = Field(default=None, gt=0, description="Stop once this much is placed")

    def to_config(self) -> PlanningConfig:
        return PlanningConfig(
            min_side=self.min_side,
            max_side=self.max_side,
            gutter_width=self.gutter_width,
            gap=self.gap,
            block_width=self.block_width,
            block_height=self.block_height,
            max_structure_area=self.max_structure_area,
            solar_enabled=self.solar_enabled,
            terrain_enabled=self.terrain_enabled,
            max_slope=self.max_slope,
            terrain_resolution=self.terrain_resolution,
            land_leveling_override=self.land_leveling_override,
            avoid_water=self.avoid_water,
            ignore_restricted_zones=self.ignore_restricted_zones,
            user_exclusions=[
                UserExclusion(
                    name=z.name,
                    coordinates=tuple(c.to_geo_point() for c in z.coordinates),
                    reason=z.reason,
                )
                for z in self.user_exclusions
            ],
            orientation_step_deg=self.orientation_step_deg,
            time_budget_s=self.time_budget_s,
            max_iterations=self.max_iterations,
            area_budget_sqm=self.area_budget_sqm,
        )


class PlanningRequest(BaseModel):
    """Request schema for planning a layout."""
    boundary: list[Coordinate] = Field(..., min_length=3, description="Parcel ring")
    configuration: PlanningConfiguration = Field(default_factory=PlanningConfiguration)
    include_blocks: bool = Field(default=False, description="Return every block footprint")
    include_geojson: bool = Field(default=False, description="Return a GeoJSON FeatureCollection")

    def boundary_points(self) -> list[GeoPoint]:
        return [c.to_geo_point() for c in self.boundary]


# =============================================================================
# Responses
# =============================================================================


class StructureResponse(BaseModel):
    """A placed polyhouse."""
    id: str
    tier: str
    rotation_degrees: float
    area_sqm: float
    length_m: float
    width_m: float
    block_count: int
    footprint: list[Coordinate]
    blocks: Optional[list[list[Coordinate]]] = None


class RestrictedZoneResponse(BaseModel):
    kind: str
    severity: str
    area_sqm: float
    reason: str = ""
    polygon: list[Coordinate]


class SharedEdgeResponse(BaseModel):
    structure_a: str
    structure_b: str
    length_m: float
    separation_m: float
    adjacent_blocks: int


class ConnectionStatsResponse(BaseModel):
    """Corner categories: 90 = free corner, 180 = aligned neighbours, 270 = stepped neighbours."""
    angle_90: int
    angle_180: int
    angle_270: int
    shared_edges: list[SharedEdgeResponse] = Field(default_factory=list)


class PlanningResponse(BaseModel):
    """Response schema for a planned layout."""
    structures: list[StructureResponse]
    restricted_zones: list[RestrictedZoneResponse]
    buildable_area_percentage: float
    average_slope: float
    coverage_percentage: float
    termination_reason: str
    degraded: bool
    elevation_range: Optional[list[float]] = None
    warnings: list[str] = Field(default_factory=list)
    orientations_tried: list[float] = Field(default_factory=list)
    latitude: float
    boundary_area_sqm: float
    total_structure_area_sqm: float
    total_area_hectares: float
    total_area_acres: float
    total_blocks: int
    connection_stats: ConnectionStatsResponse
    elapsed_seconds: float
    geojson: Optional[dict[str, Any]] = None

    @classmethod
    def from_result(
        cls,
        result: PlanningResult,
        boundary: list[GeoPoint],
        include_blocks: bool = False,
        include_geojson: bool = False,
    ) -> "PlanningResponse":
        aggregated = result.aggregated
        stats = aggregated.connection_stats

        structures = [
            StructureResponse(
                id=s.id,
                tier=s.tier,
                rotation_degrees=s.rotation_degrees,
                area_sqm=round(s.area_sqm, 2),
                length_m=s.length_m,
                width_m=s.width_m,
                block_count=len(s.blocks),
                footprint=[Coordinate.from_geo_point(p) for p in s.footprint],
                blocks=[[Coordinate.from_geo_point(p) for p in b] for b in s.blocks] if include_blocks else None,
            )
            for s in aggregated.structures
        ]
        zones = [
            RestrictedZoneResponse(
                kind=z.kind,
                severity=z.severity,
                area_sqm=round(z.area_sqm, 2),
                reason=z.reason,
                polygon=[Coordinate.from_geo_point(p) for p in z.polygon],
            )
            for z in aggregated.zones
        ]

        return cls(
            structures=structures,
            restricted_zones=zones,
            buildable_area_percentage=round(result.buildable_area_percentage, 2),
            average_slope=round(result.average_slope, 2),
            coverage_percentage=round(result.coverage_percentage, 2),
            termination_reason=result.termination_reason.value,
            degraded=result.degraded,
            elevation_range=list(result.elevation_range) if result.elevation_range else None,
            warnings=result.warnings,
            orientations_tried=result.orientations_tried,
            latitude=result.latitude,
            boundary_area_sqm=round(aggregated.boundary_area_sqm, 2),
            total_structure_area_sqm=round(aggregated.total_structure_area_sqm, 2),
            total_area_hectares=round(aggregated.total_structure_area_hectares, 4),
            total_area_acres=round(aggregated.total_structure_area_acres, 4),
            total_blocks=aggregated.total_blocks,
            connection_stats=ConnectionStatsResponse(
                angle_90=stats.angle_90,
                angle_180=stats.angle_180,
                angle_270=stats.angle_270,
                shared_edges=[
                    SharedEdgeResponse(
                        structure_a=e.structure_a,
                        structure_b=e.structure_b,
                        length_m=round(e.length_m, 3),
                        separation_m=round(e.separation_m, 3),
                        adjacent_blocks=e.adjacent_blocks,
                    )
                    for e in stats.shared_edges
                ],
            ),
            elapsed_seconds=round(result.elapsed_seconds, 3),
            geojson=to_geojson_feature_collection(boundary, aggregated, include_blocks) if include_geojson else None,
        )


class OrientationResponse(BaseModel):
    """Solar orientation window for a latitude."""
    latitude: float
    base_degrees: float
    allowed_deviation_degrees: float
    suggested_orientations: list[float]


# =============================================================================
# Jobs
# =============================================================================


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PlanningStage(str, Enum):
    """Stages of a planning job for progress tracking."""
    QUEUED = "queued"
    ANALYZING_TERRAIN = "analyzing_terrain"
    PLACING_STRUCTURES = "placing_structures"
    COMPLETED = "completed"
    FAILED = "failed"


class JobEnqueueResponse(BaseModel):
    """Response schema for planning job enqueue."""
    job_id: UUID = Field(..., description="ID of the queued job")
    status: JobStatus = Field(default=JobStatus.QUEUED, description="Initial status of the job")
    message: str = Field(default="Planning job queued successfully", description="Confirmation message")


class JobStatusResponse(BaseModel):
    """Response schema for job status polling."""
    job_id: UUID
    status: JobStatus = Field(..., description="Current status: queued, processing, completed, or failed")
    error_message: Optional[str] = Field(None, description="Error message if status is 'failed'")
    stage: Optional[PlanningStage] = Field(None, description="Current planning stage")
    progress_pct: Optional[int] = Field(None, ge=0, le=100, description="Progress percentage (0-100)")
    stage_message: Optional[str] = Field(None, description="Human-readable stage detail")
    structures_placed: int = Field(default=0, description="Structures placed so far")
    created_at: datetime
    updated_at: datetime
    result: Optional[PlanningResponse] = None
