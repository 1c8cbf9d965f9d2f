"""Deployment orchestration.

Runs the pipeline clone -> build -> publish -> route -> record for one
project at a time, and tears published artifacts down again.
"""
import asyncio
import functools
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from deployflow.config import settings
from deployflow.exceptions import (
    BuildError,
    DeployFlowError,
    DeploymentInProgressError,
    PublishError,
)
from deployflow.models import BuildMode, Deployment, DeploymentLog, Project, ProjectStatus
from deployflow.schemas.deployment import ContainerStatusResponse, DeploymentAccepted
from deployflow.services.domain import (
    BuildSpec,
    PublishedArtifact,
    ServerArtifact,
    ServerBuildSpec,
    StaticArtifact,
    StaticBuildSpec,
    build_spec_for,
    resolve_within,
)
from deployflow.services.infrastructure import (
    ArtifactPublisher,
    BuildExecutor,
    DockerService,
    NginxService,
    RepositoryFetcher,
)
from deployflow.services.log_sink import DeploymentLogSink, RunLog
from deployflow.services.project_store import ProjectStore
from deployflow.utils.logging import deployment_context, get_logger
from deployflow.websocket.redis_broadcaster import RedisBroadcaster

logger = get_logger(__name__)

CONTAINER_LOG_TAIL = 80


class DeploymentOrchestrator:
    """Coordinates deployments and teardowns, one operation per project at a time."""

    def __init__(
        self,
        store: ProjectStore,
        sink: DeploymentLogSink,
        fetcher: RepositoryFetcher,
        builder: BuildExecutor,
        publisher: ArtifactPublisher,
        runtime: DockerService,
        proxy: NginxService,
        workspace_root: Optional[str] = None,
    ) -> None:
        self.store = store
        self.sink = sink
        self.fetcher = fetcher
        self.builder = builder
        self.publisher = publisher
        self.runtime = runtime
        self.proxy = proxy
        self.workspace_root = Path(workspace_root or settings.workspace_root)

        # Projects with a deploy or teardown in flight
        self._active: Set[int] = set()
        self._tasks: Dict[int, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    async def deploy(self, project_id: int, owner_id: Optional[int] = None) -> DeploymentAccepted:
        """Start a deployment run in the background.

        Raises:
            ProjectNotFoundError: Unknown project
            DeploymentInProgressError: A deploy or teardown is already running
        """
        self._claim(project_id)
        try:
            project = await self.store.get_project(project_id, owner_id)
            deployment = await self.store.start_deployment(project_id)
        except BaseException:
            self._active.discard(project_id)
            raise

        await self.sink.publish_status(project_id, ProjectStatus.DEPLOYING, deployment.id)

        task = asyncio.create_task(
            self._run(project, deployment.id),
            name=f"deploy-project-{project_id}",
        )
        self._tasks[project_id] = task
        task.add_done_callback(functools.partial(self._on_run_finished, project_id))

        logger.info("Deployment accepted", project_id=project_id, deployment_id=deployment.id)
        return DeploymentAccepted(project_id=project_id, deployment_id=deployment.id)

    def is_deploying(self, project_id: int) -> bool:
        return project_id in self._active

    @property
    def in_flight(self) -> int:
        """Number of deployment runs currently executing."""
        return len(self._tasks)

    async def wait(self, project_id: int) -> None:
        """Wait for a project's in-flight run, if any, to finish."""
        task = self._tasks.get(project_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self, project: Project, deployment_id: str) -> None:
        log = self.sink.bind(project.id, deployment_id)
        workspace = self.workspace_root / f"{project.subdomain}-{deployment_id[:8]}"

        with deployment_context(project.id, deployment_id):
            try:
                await log.info(f"Starting deployment of {project.name} ({project.build_mode.value} mode)")
                await self.fetcher.clone(project.repo_url, workspace, log)

                spec = build_spec_for(project)
                artifact = await self._build_and_publish(project, spec, workspace, log)

                url = settings.project_url(project.subdomain)
                await self.store.complete_deployment(project.id, deployment_id, artifact, url)
                await log.success(f"Deployment successful: {url}")
                await self.sink.publish_status(project.id, ProjectStatus.RUNNING, deployment_id)
            except asyncio.CancelledError:
                await self._fail(project.id, deployment_id, log, "Deployment cancelled")
                raise
            except DeployFlowError as e:
                await self._fail(project.id, deployment_id, log, str(e))
            except Exception as e:
                logger.exception("Unexpected deployment failure")
                await self._fail(project.id, deployment_id, log, f"Unexpected error: {e}")
            finally:
                await self._remove_workspace(workspace)

    async def _build_and_publish(
        self,
        project: Project,
        spec: BuildSpec,
        workspace: Path,
        log: RunLog,
    ) -> PublishedArtifact:
        try:
            work_dir = resolve_within(workspace, spec.root_directory)
        except ValueError as e:
            raise BuildError(str(e))
        if not work_dir.is_dir():
            raise BuildError(f"Root directory '{spec.root_directory}' not found in repository")

        if isinstance(spec, StaticBuildSpec):
            await self.builder.run_static_build(spec, work_dir, log)

            try:
                output_dir = resolve_within(work_dir, spec.publish_directory)
            except ValueError as e:
                raise PublishError(str(e))
            if not output_dir.is_dir():
                raise PublishError(f"Publish directory '{spec.publish_directory}' not found after build")

            prefix = self.publisher.prefix_for(project.subdomain)
            count = await self.publisher.upload(output_dir, prefix, log)
            await log.info(f"Uploaded {count} files")
            return StaticArtifact(s3_path=prefix)

        elif isinstance(spec, ServerBuildSpec):
            deployed = await self.runtime.build_and_deploy(
                work_dir,
                project.id,
                spec.env_vars,
                log,
                start_command=spec.start_command,
            )
            await self.proxy.configure(project.subdomain, deployed.host_port, log)
            return ServerArtifact(container_id=deployed.container_id, host_port=deployed.host_port)

        else:
            raise TypeError(f"Unhandled build spec: {type(spec).__name__}")

    async def _fail(self, project_id: int, deployment_id: str, log: RunLog, message: str) -> None:
        await log.error(f"Deployment failed: {message}")
        try:
            await self.store.fail_deployment(project_id, deployment_id, message)
        except SQLAlchemyError as e:
            logger.error("Failed to record deployment failure", error=str(e))
        await self.sink.publish_status(project_id, ProjectStatus.FAILED, deployment_id)

    async def _remove_workspace(self, workspace: Path) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, functools.partial(shutil.rmtree, workspace, ignore_errors=True))
        logger.debug("Workspace removed", path=str(workspace))

    def _on_run_finished(self, project_id: int, task: asyncio.Task) -> None:
        self._active.discard(project_id)
        if self._tasks.get(project_id) is task:
            del self._tasks[project_id]

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def cleanup(self, project: Project) -> None:
        """Remove everything a project has published. Best-effort and idempotent."""
        if project.build_mode == BuildMode.STATIC:
            await self.publisher.delete_all(project.s3_path or self.publisher.prefix_for(project.subdomain))
            return

        try:
            if project.container_id:
                await self.runtime.stop_container(project.container_id)
            await self.runtime.retire_project_containers(project.id)
        except Exception as e:
            logger.warning("Container cleanup incomplete", project_id=project.id, error=str(e))

        await self.proxy.remove(project.subdomain)

    async def stop(self, project_id: int, owner_id: Optional[int] = None) -> Project:
        """Tear a project down and mark it stopped.

        Raises:
            ProjectNotFoundError: Unknown project
            DeploymentInProgressError: A deploy or teardown is running
        """
        self._claim(project_id)
        try:
            project = await self.store.get_project(project_id, owner_id)
            self._ensure_not_deploying(project)
            await self.cleanup(project)
            await self.store.mark_stopped(project_id)
        finally:
            self._active.discard(project_id)

        await self.sink.publish_status(project_id, ProjectStatus.STOPPED)
        logger.info("Project stopped", project_id=project_id)
        return await self.store.get_project(project_id)

    async def delete(self, project_id: int, owner_id: Optional[int] = None) -> None:
        """Tear a project down and delete it with its history."""
        self._claim(project_id)
        try:
            project = await self.store.get_project(project_id, owner_id)
            self._ensure_not_deploying(project)
            await self.cleanup(project)
            await self.store.delete_project(project_id)
        finally:
            self._active.discard(project_id)

    def _claim(self, project_id: int) -> None:
        # No await between the check and the add
        if project_id in self._active:
            raise DeploymentInProgressError(project_id)
        self._active.add(project_id)

    @staticmethod
    def _ensure_not_deploying(project: Project) -> None:
        if project.status == ProjectStatus.DEPLOYING:
            raise DeploymentInProgressError(project.id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_logs(self, project_id: int, owner_id: Optional[int] = None) -> List[DeploymentLog]:
        """Log entries of the current deployment, oldest first."""
        await self.store.get_project(project_id, owner_id)
        return await self.store.get_current_logs(project_id)

    async def list_deployments(self, project_id: int, owner_id: Optional[int] = None) -> List[Deployment]:
        await self.store.get_project(project_id, owner_id)
        return await self.store.list_deployments(project_id)

    async def container_status(self, project_id: int, owner_id: Optional[int] = None) -> ContainerStatusResponse:
        """Live state and log tail of a server project's container."""
        project = await self.store.get_project(project_id, owner_id)
        if project.build_mode != BuildMode.SERVER:
            raise DeployFlowError(
                "Only server projects run a container",
                status_code=400,
                details={"project_id": project_id},
            )

        if not project.container_id:
            return ContainerStatusResponse(running=False, status="not deployed", health="none")

        state = await self.runtime.get_container_status(project.container_id)
        logs = await self.runtime.get_container_logs(project.container_id, tail=CONTAINER_LOG_TAIL)
        return ContainerStatusResponse(
            container_id=project.container_id,
            running=state.running,
            status=state.status,
            health=state.health,
            started_at=state.started_at,
            logs=logs,
        )

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def recover_interrupted(self) -> int:
        """Fail runs a previous process left behind and clear stale workspaces."""
        recovered = await self.store.recover_interrupted()

        if self.workspace_root.is_dir():
            for leftover in self.workspace_root.iterdir():
                if leftover.is_dir():
                    await self._remove_workspace(leftover)
        return recovered

    async def shutdown(self) -> None:
        """Cancel in-flight runs; each is recorded as failed."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled in-flight deployments", count=len(tasks))


def create_orchestrator(
    session_factory: Optional[async_sessionmaker] = None,
    broadcaster: Optional[RedisBroadcaster] = None,
) -> DeploymentOrchestrator:
    """Wire an orchestrator from settings."""
    store = ProjectStore(session_factory)
    return DeploymentOrchestrator(
        store=store,
        sink=DeploymentLogSink(store, broadcaster or RedisBroadcaster()),
        fetcher=RepositoryFetcher(),
        builder=BuildExecutor(),
        publisher=ArtifactPublisher(),
        runtime=DockerService(),
        proxy=NginxService(),
    )
