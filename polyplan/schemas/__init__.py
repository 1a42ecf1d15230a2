"""
Pydantic schemas for API request/response models.
"""
from polyplan.schemas.planning import (
    Coordinate,
    ExclusionZoneInput,
    JobEnqueueResponse,
    JobStatus,
    JobStatusResponse,
    OrientationResponse,
    PlanningConfiguration,
    PlanningRequest,
    PlanningResponse,
    PlanningStage,
    StructureResponse,
)

__all__ = [
    # Requests
    "Coordinate",
    "ExclusionZoneInput",
    "PlanningConfiguration",
    "PlanningRequest",
    # Responses
    "PlanningResponse",
    "StructureResponse",
    "OrientationResponse",
    # Jobs
    "JobStatus",
    "PlanningStage",
    "JobEnqueueResponse",
    "JobStatusResponse",
]
