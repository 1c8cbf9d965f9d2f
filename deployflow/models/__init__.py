"""Database models package."""
from deployflow.models.project import BuildMode, Project, ProjectStatus
from deployflow.models.deployment import Deployment, DeploymentLog, DeploymentStatus, LogLevel

__all__ = [
    "BuildMode",
    "Project",
    "ProjectStatus",
    "Deployment",
    "DeploymentLog",
    "DeploymentStatus",
    "LogLevel",
]
