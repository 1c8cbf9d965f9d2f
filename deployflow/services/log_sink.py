"""Deployment log and status sink.

Each log entry is written to the service log, persisted to the current
deployment and published to the project's realtime channel.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from deployflow.models import LogLevel, ProjectStatus
from deployflow.services.project_store import ProjectStore
from deployflow.utils.logging import get_logger
from deployflow.websocket.redis_broadcaster import RedisBroadcaster

logger = get_logger(__name__)

SERVICE_LOG_METHODS = {
    LogLevel.INFO: "info",
    LogLevel.SUCCESS: "info",
    LogLevel.WARN: "warning",
    LogLevel.ERROR: "error",
}


class DeploymentLogSink:
    """Persists and broadcasts deployment log entries and status changes."""

    def __init__(self, store: ProjectStore, broadcaster: Optional[RedisBroadcaster] = None) -> None:
        self.store = store
        self.broadcaster = broadcaster

    async def emit(self, project_id: int, deployment_id: str, level: LogLevel, message: str) -> None:
        """Record one log entry. Never raises for storage or channel failures."""
        timestamp = datetime.now(timezone.utc)
        getattr(logger, SERVICE_LOG_METHODS[level])(
            message,
            project_id=project_id,
            deployment_id=deployment_id,
        )

        try:
            await self.store.append_log(project_id, deployment_id, level, message, timestamp)
        except SQLAlchemyError as e:
            logger.error("Failed to persist deployment log", project_id=project_id, error=str(e))

        await self._publish(project_id, {
            "type": "deployment-log",
            "project_id": project_id,
            "deployment_id": deployment_id,
            "level": level.value,
            "message": message,
            "timestamp": timestamp.isoformat(),
        })

    async def publish_status(self, project_id: int, status: ProjectStatus, deployment_id: Optional[str] = None) -> None:
        """Announce a project status change."""
        await self._publish(project_id, {
            "type": "deployment-status",
            "project_id": project_id,
            "deployment_id": deployment_id,
            "status": status.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def bind(self, project_id: int, deployment_id: str) -> "RunLog":
        """Log handle for one deployment run."""
        return RunLog(self, project_id, deployment_id)

    async def _publish(self, project_id: int, event: dict) -> None:
        if self.broadcaster is not None:
            await self.broadcaster.publish(project_id, event)


class RunLog:
    """Log handle scoped to a single deployment run."""

    def __init__(self, sink: DeploymentLogSink, project_id: int, deployment_id: str) -> None:
        self.sink = sink
        self.project_id = project_id
        self.deployment_id = deployment_id

    async def info(self, message: str) -> None:
        await self.sink.emit(self.project_id, self.deployment_id, LogLevel.INFO, message)

    async def warn(self, message: str) -> None:
        await self.sink.emit(self.project_id, self.deployment_id, LogLevel.WARN, message)

    async def error(self, message: str) -> None:
        await self.sink.emit(self.project_id, self.deployment_id, LogLevel.ERROR, message)

    async def success(self, message: str) -> None:
        await self.sink.emit(self.project_id, self.deployment_id, LogLevel.SUCCESS, message)
