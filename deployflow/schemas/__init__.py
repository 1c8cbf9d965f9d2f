"""Pydantic schemas package."""
from deployflow.schemas.deployment import (
    ContainerStatusResponse,
    DeploymentAccepted,
    DeploymentListResponse,
    DeploymentResponse,
    LogEntryResponse,
)
from deployflow.schemas.project import (
    ProjectCreate,
    ProjectListResponse,
    ProjectResponse,
    ProjectUpdate,
)

__all__ = [
    "ContainerStatusResponse",
    "DeploymentAccepted",
    "DeploymentListResponse",
    "DeploymentResponse",
    "LogEntryResponse",
    "ProjectCreate",
    "ProjectListResponse",
    "ProjectResponse",
    "ProjectUpdate",
]
