"""
API modules for the Polyhouse Planner.
"""
from polyplan.api.planning import router as planning_router

__all__ = ["planning_router"]
