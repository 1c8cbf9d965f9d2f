"""Deployment and deployment log models."""
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, DateTime, Enum as SQLEnum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from deployflow.database import Base
from deployflow.models.project import BuildMode, build_mode_enum

if TYPE_CHECKING:
    from deployflow.models.project import Project


class DeploymentStatus(str, Enum):
    """Deployment lifecycle status."""
    DEPLOYING = "deploying"  # Pipeline running
    RUNNING = "running"      # Artifact live
    FAILED = "failed"        # Pipeline aborted
    STOPPED = "stopped"      # Torn down


class LogLevel(str, Enum):
    """Severity of a deployment log entry."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


class Deployment(Base):
    """One execution of the pipeline for a project."""

    __tablename__ = "deployments"

    # Primary key
    id: Mapped[str] = mapped_column(String(36), primary_key=True)  # UUID

    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Version tag (ISO timestamp of the run start)
    version: Mapped[str] = mapped_column(String(40), nullable=False)

    status: Mapped[DeploymentStatus] = mapped_column(
        SQLEnum(DeploymentStatus, values_callable=lambda x: [e.value for e in x], name="deploymentstatus"),
        nullable=False,
        default=DeploymentStatus.DEPLOYING,
    )
    build_mode: Mapped[BuildMode] = mapped_column(build_mode_enum, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Publish location
    s3_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    container_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    host_port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    deploy_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    project: Mapped["Project"] = relationship("Project", back_populates="deployments")
    logs: Mapped[List["DeploymentLog"]] = relationship(
        "DeploymentLog",
        back_populates="deployment",
        cascade="all, delete-orphan",
        order_by="DeploymentLog.id",
        lazy="noload",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Deployment {self.id} ({self.status.value})>"


class DeploymentLog(Base):
    """Append-only log entry scoped to one deployment."""

    __tablename__ = "deployment_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deployment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("deployments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    project_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    level: Mapped[LogLevel] = mapped_column(
        SQLEnum(LogLevel, values_callable=lambda x: [e.value for e in x], name="loglevel"),
        nullable=False,
        default=LogLevel.INFO,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)

    deployment: Mapped["Deployment"] = relationship("Deployment", back_populates="logs")
