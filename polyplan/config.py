"""
Application configuration from environment variables.
"""
from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Polyhouse Planner API"
    debug: bool = False

    # CORS - allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:5173",  # Vite dev server
        "http://localhost:3000",
    ]

    # Structure defaults (metres)
    block_width_m: float = 8.0
    block_height_m: float = 4.0
    min_side_m: float = 16.0
    max_side_m: float = 100.0
    gutter_width_m: float = 2.0
    gap_m: float = 2.0
    max_structure_area_sqm: Optional[float] = 10000.0  # largest single structure (m²)
    max_slope_deg: float = 15.0
    avoid_water: bool = True

    # Terrain sampling and fetch policy
    terrain_resolution: str = "auto"  # auto | high | medium | low
    terrain_max_samples: int = 4000
    terrain_fetch_timeout_s: float = 30.0
    terrain_fetch_retries: int = 2
    road_max_width_m: float = 25.0
    road_min_elongation: float = 3.0

    # Terrain data sources. Empty means flat terrain with cropland cover.
    dem_raster_path: Optional[str] = None
    land_cover_raster_path: Optional[str] = None
    elevation_api_url: Optional[str] = None

    # Optimizer budgets
    optimizer_time_budget_s: float = 60.0
    optimizer_max_iterations: int = 20000
    optimizer_orientation_workers: int = 4
    orientation_step_deg: float = 10.0

    # Worker pool and job retention
    planning_workers: int = 2
    job_retention_s: float = 3600.0
    max_finished_jobs: int = 500

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from comma-separated string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("terrain_resolution")
    @classmethod
    def check_resolution(cls, v: str) -> str:
        if v not in ("auto", "high", "medium", "low"):
            raise ValueError(f"Unknown terrain resolution: {v}")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
