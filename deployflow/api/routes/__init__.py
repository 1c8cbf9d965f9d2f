"""API routes."""
from deployflow.api.routes.health import router as health_router
from deployflow.api.routes.projects import router as projects_router

__all__ = ["health_router", "projects_router"]
