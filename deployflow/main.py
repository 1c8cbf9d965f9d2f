"""Main FastAPI application entry point."""
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deployflow import __version__
from deployflow.api import health_router, projects_router
from deployflow.config import settings
from deployflow.database import init_db
from deployflow.exceptions import DeployFlowError, deployflow_exception_handler
from deployflow.services.orchestrator import create_orchestrator
from deployflow.utils.logging import get_logger, setup_logging
from deployflow.websocket.redis_broadcaster import RedisBroadcaster

# Initialize logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown events.

    Args:
        app: FastAPI application instance

    Yields:
        None
    """
    # Startup
    logger.info("Starting DeployFlow API", version=__version__)

    await init_db()
    logger.info("Database initialized")

    broadcaster = RedisBroadcaster()
    orchestrator = create_orchestrator(broadcaster=broadcaster)
    app.state.orchestrator = orchestrator

    recovered = await orchestrator.recover_interrupted()
    if recovered:
        logger.warning("Marked interrupted deployments as failed", count=recovered)

    yield

    # Shutdown
    logger.info("Shutting down DeployFlow API")
    await orchestrator.shutdown()

    try:
        await broadcaster.disconnect()
        logger.info("Redis broadcaster disconnected")
    except Exception as e:
        logger.error(f"Error disconnecting Redis broadcaster: {e}")


# Create FastAPI application
app = FastAPI(
    title="DeployFlow API",
    description="Deploy Git repositories as static sites or containers under per-project subdomains",
    version=__version__,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
app.add_exception_handler(DeployFlowError, deployflow_exception_handler)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors.

    Args:
        request: HTTP request
        exc: Exception that occurred

    Returns:
        JSON error response
    """
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True,
    )

    if settings.debug:
        return JSONResponse(
            status_code=500,
            content={
                "detail": str(exc),
                "type": type(exc).__name__,
            },
        )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Include routers
app.include_router(health_router)
app.include_router(projects_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API information.

    Returns:
        API information
    """
    return {
        "name": "DeployFlow API",
        "version": __version__,
        "docs": "/docs" if settings.debug else None,
    }
