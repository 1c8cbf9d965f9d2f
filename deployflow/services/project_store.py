"""Persistence of projects, deployments and deployment logs.

Every method opens its own session so the store can be shared by request
handlers and background deployment runs.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deployflow.database import async_session_factory
from deployflow.exceptions import ConfigConflictError, DeploymentInProgressError, ProjectNotFoundError
from deployflow.models import (
    BuildMode,
    Deployment,
    DeploymentLog,
    DeploymentStatus,
    LogLevel,
    Project,
    ProjectStatus,
)
from deployflow.schemas.project import ProjectCreate, ProjectUpdate
from deployflow.services.domain import PublishedArtifact, ServerArtifact, StaticArtifact, normalize_subdomain
from deployflow.utils.logging import get_logger

logger = get_logger(__name__)

INTERRUPTED_MESSAGE = "interrupted by service restart"

# Fields an update may explicitly clear
NULLABLE_FIELDS = ("description", "start_command")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProjectStore:
    """Project, deployment and log persistence."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None) -> None:
        self.session_factory = session_factory or async_session_factory

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def create_project(self, owner_id: int, data: ProjectCreate) -> Project:
        """Create a project after normalizing and reserving its subdomain.

        Raises:
            ConfigConflictError: If the normalized subdomain is taken
        """
        subdomain = normalize_subdomain(data.subdomain)
        values = data.model_dump()
        values["subdomain"] = subdomain

        async with self.session_factory() as session:
            await self._ensure_subdomain_free(session, subdomain)
            project = Project(owner_id=owner_id, status=ProjectStatus.IDLE, **values)
            session.add(project)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise self._subdomain_conflict(subdomain)
            project_id = project.id

        logger.info("Project created", project_id=project_id, subdomain=subdomain)
        return await self.get_project(project_id)

    async def get_project(self, project_id: int, owner_id: Optional[int] = None) -> Project:
        """Load a project with its deployment history.

        Raises:
            ProjectNotFoundError: If it does not exist or belongs to someone else
        """
        async with self.session_factory() as session:
            project = await self._load(session, project_id)
        if project is None or (owner_id is not None and project.owner_id != owner_id):
            raise ProjectNotFoundError(project_id)
        return project

    async def list_projects(self, owner_id: int) -> List[Project]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Project)
                .where(Project.owner_id == owner_id)
                .order_by(Project.created_at.desc(), Project.id.desc())
            )
            return list(result.scalars().all())

    async def update_project(self, project_id: int, owner_id: int, data: ProjectUpdate) -> Project:
        """Apply a partial configuration update.

        Raises:
            ProjectNotFoundError: Unknown project
            DeploymentInProgressError: A deployment is running
            ConfigConflictError: Subdomain taken, or routing changes on a live project
        """
        changes: Dict[str, Any] = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key in NULLABLE_FIELDS
        }

        async with self.session_factory() as session:
            project = await self._load(session, project_id)
            if project is None or project.owner_id != owner_id:
                raise ProjectNotFoundError(project_id)
            if project.status == ProjectStatus.DEPLOYING:
                raise DeploymentInProgressError(project_id)

            if "subdomain" in changes:
                changes["subdomain"] = normalize_subdomain(changes["subdomain"])
                if changes["subdomain"] == project.subdomain:
                    del changes["subdomain"]

            routing_changed = "subdomain" in changes or (
                "build_mode" in changes and changes["build_mode"] != project.build_mode
            )
            has_live_artifact = project.s3_path is not None or project.container_id is not None
            if routing_changed and has_live_artifact:
                raise ConfigConflictError(
                    "Stop the project before changing its subdomain or build mode",
                    details={"project_id": project_id},
                )

            if "subdomain" in changes:
                await self._ensure_subdomain_free(session, changes["subdomain"], exclude_id=project_id)

            for key, value in changes.items():
                setattr(project, key, value)

            if project.build_mode == BuildMode.STATIC:
                project.env_vars = {}
                project.start_command = None

            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise self._subdomain_conflict(changes.get("subdomain", project.subdomain))

        logger.info("Project updated", project_id=project_id, fields=sorted(changes))
        return await self.get_project(project_id)

    async def delete_project(self, project_id: int) -> None:
        async with self.session_factory() as session:
            project = await self._load(session, project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)
            await session.execute(delete(DeploymentLog).where(DeploymentLog.project_id == project_id))
            await session.delete(project)
            await session.commit()
        logger.info("Project deleted", project_id=project_id)

    # ------------------------------------------------------------------
    # Deployment lifecycle
    # ------------------------------------------------------------------

    async def start_deployment(self, project_id: int) -> Deployment:
        """Claim a project for deployment and record the new run.

        The status claim is a conditional update, so two callers can never
        both move a project into ``deploying``. The prior current deployment
        is demoted in the same transaction.

        Raises:
            ProjectNotFoundError: Unknown project
            DeploymentInProgressError: The project is already deploying
        """
        started_at = utcnow()
        async with self.session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)

            result = await session.execute(
                update(Project)
                .where(Project.id == project_id, Project.status != ProjectStatus.DEPLOYING)
                .values(status=ProjectStatus.DEPLOYING, updated_at=started_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise DeploymentInProgressError(project_id)

            await session.execute(
                update(Deployment)
                .where(Deployment.project_id == project_id, Deployment.is_current.is_(True))
                .values(is_current=False)
                .execution_options(synchronize_session=False)
            )

            deployment = Deployment(
                id=str(uuid.uuid4()),
                project_id=project_id,
                version=started_at.isoformat(),
                status=DeploymentStatus.DEPLOYING,
                build_mode=project.build_mode,
                is_current=True,
                started_at=started_at,
            )
            session.add(deployment)
            await session.commit()

        logger.info("Deployment started", project_id=project_id, deployment_id=deployment.id)
        return deployment

    async def complete_deployment(
        self,
        project_id: int,
        deployment_id: str,
        artifact: PublishedArtifact,
        deploy_url: str,
    ) -> None:
        """Record a successful run and repoint the project at its artifact."""
        completed_at = utcnow()
        if isinstance(artifact, StaticArtifact):
            pointers = {"s3_path": artifact.s3_path, "container_id": None, "host_port": None}
        elif isinstance(artifact, ServerArtifact):
            pointers = {"s3_path": None, "container_id": artifact.container_id, "host_port": artifact.host_port}
        else:
            raise TypeError(f"Unknown artifact type: {type(artifact).__name__}")

        async with self.session_factory() as session:
            await session.execute(
                update(Deployment)
                .where(Deployment.id == deployment_id)
                .values(
                    status=DeploymentStatus.RUNNING,
                    deploy_url=deploy_url,
                    completed_at=completed_at,
                    **pointers,
                )
            )
            await session.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(status=ProjectStatus.RUNNING, deploy_url=deploy_url, updated_at=completed_at, **pointers)
            )
            await session.commit()

    async def fail_deployment(self, project_id: int, deployment_id: str, error_message: str) -> None:
        """Record a failed run. Artifact pointers keep referring to the last good deployment."""
        completed_at = utcnow()
        async with self.session_factory() as session:
            await session.execute(
                update(Deployment)
                .where(Deployment.id == deployment_id)
                .values(status=DeploymentStatus.FAILED, error_message=error_message, completed_at=completed_at)
            )
            await session.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(status=ProjectStatus.FAILED, updated_at=completed_at)
            )
            await session.commit()

    async def mark_stopped(self, project_id: int) -> None:
        """Record a teardown: the project no longer serves anything."""
        now = utcnow()
        async with self.session_factory() as session:
            await session.execute(
                update(Deployment)
                .where(
                    Deployment.project_id == project_id,
                    Deployment.status == DeploymentStatus.RUNNING,
                )
                .values(status=DeploymentStatus.STOPPED)
            )
            await session.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(
                    status=ProjectStatus.STOPPED,
                    deploy_url=None,
                    s3_path=None,
                    container_id=None,
                    host_port=None,
                    updated_at=now,
                )
            )
            await session.commit()

    async def recover_interrupted(self) -> int:
        """Fail every run left in ``deploying`` by a previous process.

        Returns:
            Number of projects recovered
        """
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Project.id).where(Project.status == ProjectStatus.DEPLOYING)
            )
            project_ids = list(result.scalars().all())
            if not project_ids:
                return 0

            await session.execute(
                update(Deployment)
                .where(
                    Deployment.project_id.in_(project_ids),
                    Deployment.status == DeploymentStatus.DEPLOYING,
                )
                .values(status=DeploymentStatus.FAILED, error_message=INTERRUPTED_MESSAGE, completed_at=now)
            )
            await session.execute(
                update(Project)
                .where(Project.id.in_(project_ids))
                .values(status=ProjectStatus.FAILED, updated_at=now)
            )
            await session.commit()

        logger.warning("Recovered interrupted deployments", project_ids=project_ids)
        return len(project_ids)

    # ------------------------------------------------------------------
    # History and logs
    # ------------------------------------------------------------------

    async def append_log(
        self,
        project_id: int,
        deployment_id: str,
        level: LogLevel,
        message: str,
        timestamp: Optional[datetime] = None,
    ) -> DeploymentLog:
        """Append one log entry to a deployment."""
        entry = DeploymentLog(
            deployment_id=deployment_id,
            project_id=project_id,
            timestamp=timestamp or utcnow(),
            level=level,
            message=message,
        )
        async with self.session_factory() as session:
            session.add(entry)
            await session.commit()
        return entry

    async def get_current_logs(self, project_id: int) -> List[DeploymentLog]:
        """Log entries of the project's current deployment, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeploymentLog)
                .join(Deployment, Deployment.id == DeploymentLog.deployment_id)
                .where(Deployment.project_id == project_id, Deployment.is_current.is_(True))
                .order_by(DeploymentLog.timestamp, DeploymentLog.id)
            )
            return list(result.scalars().all())

    async def list_deployments(self, project_id: int) -> List[Deployment]:
        """Deployment history, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Deployment)
                .where(Deployment.project_id == project_id)
                .order_by(Deployment.started_at, Deployment.id)
            )
            return list(result.scalars().all())

    async def get_deployment(self, deployment_id: str) -> Optional[Deployment]:
        async with self.session_factory() as session:
            return await session.get(Deployment, deployment_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, session: AsyncSession, project_id: int) -> Optional[Project]:
        result = await session.execute(
            select(Project)
            .where(Project.id == project_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _ensure_subdomain_free(
        self,
        session: AsyncSession,
        subdomain: str,
        exclude_id: Optional[int] = None,
    ) -> None:
        query = select(Project.id).where(Project.subdomain == subdomain)
        if exclude_id is not None:
            query = query.where(Project.id != exclude_id)
        result = await session.execute(query)
        if result.first() is not None:
            raise self._subdomain_conflict(subdomain)

    @staticmethod
    def _subdomain_conflict(subdomain: str) -> ConfigConflictError:
        return ConfigConflictError(
            f"Subdomain '{subdomain}' is already taken",
            details={"subdomain": subdomain},
        )
