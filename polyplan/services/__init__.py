"""
Planning services for the Polyhouse Planner.
"""
# Geometry and projection
from polyplan.services.projection import (
    CoordinateProjector,
    GeoPoint,
    LocalPoint,
)
from polyplan.services.solar import (
    OrientationWindow,
    calculate_solar_orientation,
    is_orientation_valid,
    suggested_orientations,
)

# Terrain
from polyplan.services.terrain_sources import (
    FlatTerrainSource,
    LandCover,
    TerrainDataSource,
)
from polyplan.services.terrain_constraints import (
    RestrictedZone,
    TerrainAnalysis,
    TerrainConstraintBuilder,
    ZoneKind,
)

# Packing and results
from polyplan.services.packing_optimizer import (
    PackingOptimizer,
    PlacedStructure,
    StructureSpec,
    TerminationReason,
)
from polyplan.services.result_aggregator import ResultAggregator
from polyplan.services.planning_service import (
    InvalidBoundaryError,
    PlanningConfig,
    PlanningResult,
    PolyhousePlanningService,
    get_planning_service,
)

__all__ = [
    # Geometry and projection
    "CoordinateProjector",
    "GeoPoint",
    "LocalPoint",
    "OrientationWindow",
    "calculate_solar_orientation",
    "is_orientation_valid",
    "suggested_orientations",
    # Terrain
    "TerrainDataSource",
    "FlatTerrainSource",
    "LandCover",
    "TerrainConstraintBuilder",
    "TerrainAnalysis",
    "RestrictedZone",
    "ZoneKind",
    # Packing and results
    "PackingOptimizer",
    "PlacedStructure",
    "StructureSpec",
    "TerminationReason",
    "ResultAggregator",
    "PlanningConfig",
    "PlanningResult",
    "PolyhousePlanningService",
    "InvalidBoundaryError",
    "get_planning_service",
]
