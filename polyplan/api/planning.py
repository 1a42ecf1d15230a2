"""
Planning API endpoints.

Synchronous planning for small parcels, queued jobs with progress polling
for larger ones, and the solar orientation window for a latitude.
"""
import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Request, status

from polyplan.schemas.planning import (
    JobEnqueueResponse,
    JobStatusResponse,
    OrientationResponse,
    PlanningRequest,
    PlanningResponse,
)
from polyplan.services.planning_service import (
    InvalidBoundaryError,
    InvalidConfigurationError,
    get_planning_service,
)
from polyplan.services.solar import calculate_solar_orientation, suggested_orientations
from polyplan.worker import PlanningWorkerPool

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/plans", tags=["Planning"])


def _get_pool(request: Request) -> PlanningWorkerPool:
    pool = getattr(request.app.state, "worker_pool", None)
    if pool is None or not pool.running:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Planning workers are not running",
        )
    return pool


@router.post(
    "",
    response_model=PlanningResponse,
    status_code=status.HTTP_200_OK,
    summary="Plan a polyhouse layout",
    description="Runs the full planning pipeline and returns the layout.",
)
async def create_plan(request: PlanningRequest) -> PlanningResponse:
    boundary = request.boundary_points()
    try:
        result = await get_planning_service().plan(boundary, request.configuration.to_config())
    except (InvalidBoundaryError, InvalidConfigurationError) as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )

    return PlanningResponse.from_result(
        result,
        boundary,
        include_blocks=request.include_blocks,
        include_geojson=request.include_geojson,
    )


@router.post(
    "/jobs",
    response_model=JobEnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a planning job",
    description="Queues the request for the worker pool. Poll the job for progress and result.",
)
async def enqueue_plan(payload: PlanningRequest, request: Request) -> JobEnqueueResponse:
    pool = _get_pool(request)
    job = pool.submit(payload)
    return JobEnqueueResponse(job_id=job.job_id, status=job.status)


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    summary="Get planning job status",
)
async def get_job(job_id: UUID, request: Request) -> JobStatusResponse:
    pool = _get_pool(request)
    job = pool.store.get(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    return job.to_response()


@router.get(
    "/orientation",
    response_model=OrientationResponse,
    summary="Solar orientation window",
    description="Allowed deviation from north-south and suggested bearings for a latitude.",
)
async def get_orientation(
    latitude: float = Query(..., ge=-90, le=90, description="Latitude in degrees"),
) -> OrientationResponse:
    window = calculate_solar_orientation(latitude)
    return OrientationResponse(
        latitude=latitude,
        base_degrees=window.base_degrees,
        allowed_deviation_degrees=window.allowed_deviation_degrees,
        suggested_orientations=suggested_orientations(latitude),
    )
