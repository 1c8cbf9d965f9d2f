"""Health check endpoints."""
import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from deployflow import __version__
from deployflow.api.dependencies import get_orchestrator
from deployflow.services.orchestrator import DeploymentOrchestrator
from deployflow.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

CHECK_TIMEOUT_SECONDS = 5.0


@router.get("")
async def health_check() -> Dict[str, Any]:
    """Basic health check endpoint.

    Returns:
        Health status with timestamp
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
    }


async def check_database(orchestrator: DeploymentOrchestrator) -> None:
    async with orchestrator.store.session_factory() as session:
        await session.execute(text("SELECT 1"))


async def check_redis(orchestrator: DeploymentOrchestrator) -> None:
    broadcaster = orchestrator.sink.broadcaster
    if broadcaster is None:
        raise RuntimeError("no realtime channel configured")
    redis = await broadcaster.connect()
    await redis.ping()


async def check_docker(orchestrator: DeploymentOrchestrator) -> None:
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, lambda: orchestrator.runtime.client.ping())


async def check_directories(orchestrator: DeploymentOrchestrator) -> None:
    for path in (orchestrator.workspace_root, orchestrator.proxy.sites_dir):
        if not is_writable(path):
            raise RuntimeError(f"{path} is not writable")


def is_writable(path: Path) -> bool:
    """Whether ``path``, or the closest existing parent it would be created in, is writable."""
    while not path.exists():
        if path.parent == path:
            return False
        path = path.parent
    return os.access(path, os.W_OK)


READINESS_CHECKS: Dict[str, Callable[[DeploymentOrchestrator], Awaitable[None]]] = {
    "database": check_database,
    "redis": check_redis,
    "docker": check_docker,
    "filesystem": check_directories,
}


@router.get("/ready")
async def readiness_check(
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Readiness check against everything a deployment run depends on.

    Returns:
        Status of all dependencies; 503 when any of them is unavailable
    """
    dependencies: Dict[str, str] = {}
    for name, check in READINESS_CHECKS.items():
        try:
            await asyncio.wait_for(check(orchestrator), timeout=CHECK_TIMEOUT_SECONDS)
            dependencies[name] = "connected"
        except Exception as e:
            logger.warning("Readiness check failed", dependency=name, error=str(e))
            dependencies[name] = f"error: {e}"

    ready = all(state == "connected" for state in dependencies.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if ready else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "dependencies": dependencies,
            "deployments_in_flight": orchestrator.in_flight,
        },
    )


@router.get("/live")
async def liveness_check() -> Dict[str, str]:
    """Liveness endpoint.

    Returns:
        Simple alive status
    """
    return {"status": "alive"}
