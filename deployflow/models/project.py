"""Project database model."""
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional

from sqlalchemy import JSON, DateTime, Enum as SQLEnum, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from deployflow.database import Base

if TYPE_CHECKING:
    from deployflow.models.deployment import Deployment


class ProjectStatus(str, Enum):
    """Project lifecycle status."""

    IDLE = "idle"
    DEPLOYING = "deploying"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


class BuildMode(str, Enum):
    """How a project is built and published."""

    STATIC = "static"  # file tree served from object storage
    SERVER = "server"  # long-running container behind the proxy


# Shared by projects and deployments
build_mode_enum = SQLEnum(BuildMode, values_callable=lambda x: [e.value for e in x], name="buildmode")


class Project(Base):
    """A deployable unit bound to one Git repository and one subdomain."""

    __tablename__ = "projects"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    # Project metadata
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Source and routing
    repo_url: Mapped[str] = mapped_column(String(500), nullable=False)
    subdomain: Mapped[str] = mapped_column(String(63), nullable=False, unique=True, index=True)

    # Build configuration
    build_mode: Mapped[BuildMode] = mapped_column(build_mode_enum, nullable=False)
    root_directory: Mapped[str] = mapped_column(String(255), nullable=False, default=".")
    build_command: Mapped[str] = mapped_column(String(1000), nullable=False, default="npm run build")
    start_command: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    publish_directory: Mapped[str] = mapped_column(String(255), nullable=False, default="dist")
    env_vars: Mapped[Dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)

    # Runtime state
    status: Mapped[ProjectStatus] = mapped_column(
        SQLEnum(ProjectStatus, values_callable=lambda x: [e.value for e in x], name="projectstatus"),
        nullable=False,
        default=ProjectStatus.IDLE,
        index=True,
    )
    deploy_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Live artifact pointers (updated only by successful deployments)
    s3_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    container_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    host_port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    deployments: Mapped[List["Deployment"]] = relationship(
        "Deployment",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="Deployment.started_at",
        lazy="selectin",
        passive_deletes=True,
    )

    @property
    def env_var_names(self) -> List[str]:
        """Names of configured environment variables; values are never exposed."""
        return sorted(self.env_vars or {})

    @property
    def current_deployment(self) -> Optional["Deployment"]:
        """The deployment flagged as current, if any."""
        for deployment in self.deployments:
            if deployment.is_current:
                return deployment
        return None

    def __repr__(self) -> str:
        """String representation of Project."""
        return f"<Project(id={self.id}, subdomain='{self.subdomain}', status={self.status})>"
