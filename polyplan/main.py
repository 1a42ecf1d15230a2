"""
Polyhouse Planner API - Main FastAPI Application
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from polyplan import __version__
from polyplan.api.planning import router as planning_router
from polyplan.config import get_settings
from polyplan.worker import PlanningWorkerPool

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler for startup/shutdown events.
    """
    logger.info("Starting Polyhouse Planner API...")
    logger.info(f"Environment: debug={settings.debug}")

    pool = PlanningWorkerPool(workers=settings.planning_workers)
    await pool.start()
    app.state.worker_pool = pool

    yield

    logger.info("Shutting down Polyhouse Planner API...")
    await pool.stop()


app = FastAPI(
    title=settings.app_name,
    description="Terrain- and solar-aware polyhouse layout planning",
    version=__version__,
    lifespan=lifespan,
)

# =============================================================================
# CORS Middleware
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# =============================================================================
# Exception Handlers
# =============================================================================


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions with consistent JSON response."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "status_code": exc.status_code,
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report schema violations in the same envelope as other errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Invalid request",
            "details": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
                for err in exc.errors()
            ],
            "status_code": 422,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "status_code": 500,
        },
    )


# =============================================================================
# Health Check Endpoints
# =============================================================================


@app.get("/health", tags=["Health"])
async def health() -> dict[str, str]:
    """
    Basic liveness check endpoint.

    Returns 200 OK if the service is running.
    """
    return {"status": "ok"}


@app.get("/health/ready", tags=["Health"])
async def health_ready(request: Request) -> JSONResponse:
    """
    Readiness check that verifies the planning workers are running.

    Returns 503 when the worker pool is down.
    """
    pool = getattr(request.app.state, "worker_pool", None)
    if pool is None or not pool.running:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unavailable", "workers": 0},
        )
    return JSONResponse(content={"status": "ready", "workers": pool.workers})


# =============================================================================
# API Routes
# =============================================================================

app.include_router(planning_router)
