"""API package for FastAPI routes."""
from deployflow.api.routes import health_router, projects_router

__all__ = ["health_router", "projects_router"]
