"""Deployment-related Pydantic schemas."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from deployflow.models.deployment import DeploymentStatus, LogLevel
from deployflow.models.project import BuildMode


class LogEntryResponse(BaseModel):
    """One deployment log line."""

    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    level: LogLevel
    message: str


class DeploymentResponse(BaseModel):
    """Deployment record."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    version: str
    status: DeploymentStatus
    build_mode: BuildMode
    is_current: bool
    s3_path: Optional[str] = None
    container_id: Optional[str] = None
    host_port: Optional[int] = None
    deploy_url: Optional[str] = None
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


class DeploymentListResponse(BaseModel):
    """Deployment history, oldest first."""

    deployments: List[DeploymentResponse]
    total: int


class DeploymentAccepted(BaseModel):
    """Acknowledgment returned when a deployment run has been started."""

    project_id: int
    deployment_id: str
    status: str = "accepted"


class ContainerStatusResponse(BaseModel):
    """Live view of a server-mode project's container."""

    container_id: Optional[str] = None
    running: bool
    status: str
    health: str
    started_at: Optional[str] = None
    logs: str = ""
