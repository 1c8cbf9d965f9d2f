"""Docker container lifecycle management service.

Builds project images, runs them as labeled containers on allocated host
ports and replaces the previous instance once the new one is ready.
Uses docker-py; blocking calls run in the default executor.
"""
import asyncio
import json
import re
import threading
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, TypeVar

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.models.containers import Container

from deployflow.config import settings
from deployflow.exceptions import BuildError, ContainerError, PollTimeoutError
from deployflow.services.infrastructure.ports import PORT_LABEL, PortAllocator
from deployflow.utils.logging import get_logger
from deployflow.utils.polling import poll_until

if TYPE_CHECKING:
    from deployflow.services.log_sink import RunLog

logger = get_logger(__name__)

T = TypeVar("T")

MANAGED_LABEL = "deployflow.managed"
PROJECT_LABEL = "deployflow.project.id"

RECIPE_DIR = ".deployflow"
DEFAULT_START_COMMAND = "npm start"

DOCKERIGNORE = """# Generated by DeployFlow
node_modules
.git
*.log
.env*
.DS_Store
"""

# Classic builder step lines ("Step 3/9 : RUN npm ci")
BUILD_STEP = re.compile(r"^Step \d+/\d+ : ")
BUILD_SUCCESS = re.compile(r"^Successfully (built|tagged) ")

READINESS_LOG_TAIL = 50


@dataclass
class ContainerState:
    """Snapshot of a container's runtime state."""
    status: str
    running: bool
    health: str  # "healthy", "unhealthy", "starting" or "none"
    restarting: bool = False
    exit_code: Optional[int] = None
    started_at: Optional[str] = None

    @classmethod
    def unknown(cls) -> "ContainerState":
        return cls(status="unknown", running=False, health="none")

    @classmethod
    def from_attrs(cls, attrs: Dict[str, Any]) -> "ContainerState":
        state = attrs.get("State") or {}
        health = (state.get("Health") or {}).get("Status") or "none"
        return cls(
            status=state.get("Status", "unknown"),
            running=bool(state.get("Running")),
            health=health,
            restarting=bool(state.get("Restarting")),
            exit_code=state.get("ExitCode"),
            started_at=state.get("StartedAt"),
        )


@dataclass
class ContainerInfo:
    """Container information dataclass."""
    id: str
    short_id: str
    name: str
    status: str
    labels: Dict[str, str]

    @property
    def host_port(self) -> Optional[int]:
        value = self.labels.get(PORT_LABEL, "")
        return int(value) if value.isdigit() else None

    @property
    def is_running(self) -> bool:
        return self.status == "running"


@dataclass
class DeployedContainer:
    """A container that passed readiness and now serves the project."""
    container_id: str
    host_port: int
    image_tag: str
    name: str


def render_dockerfile(
    start_command: Optional[str] = None,
    healthcheck_path: Optional[str] = None,
    base_image: Optional[str] = None,
    container_port: Optional[int] = None,
) -> str:
    """Dockerfile used for server projects that do not ship their own.

    Manifests are copied and dependencies installed before the source so the
    dependency layer is reused while only application code changes.
    """
    base_image = base_image or settings.container_base_image
    port = container_port or settings.container_port
    cmd = json.dumps(["sh", "-c", start_command or DEFAULT_START_COMMAND])

    lines = [
        f"FROM {base_image}",
        "RUN apk add --no-cache curl",
        "WORKDIR /app",
        "COPY package*.json ./",
        "RUN if [ -f package-lock.json ]; then npm ci --omit=dev; else npm install --omit=dev; fi",
        "COPY . .",
        "RUN addgroup -g 1001 -S nodejs && adduser -S nodejs -u 1001 -G nodejs && chown -R nodejs:nodejs /app",
        "USER nodejs",
        "ENV NODE_ENV=production",
        f"ENV PORT={port}",
        f"EXPOSE {port}",
    ]
    if healthcheck_path:
        path = "/" + healthcheck_path.lstrip("/")
        lines.append(
            "HEALTHCHECK --interval=5s --timeout=3s --start-period=10s --retries=3 "
            f"CMD curl -fs http://localhost:{port}{path} || exit 1"
        )
    lines.append(f"CMD {cmd}")
    return "\n".join(lines) + "\n"


def classify_build_chunk(chunk: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    """Decide which decoded build stream chunks reach the deployment log.

    Returns:
        ``(level, message)`` for step boundaries, success lines and errors;
        None for everything else
    """
    if "error" in chunk or "errorDetail" in chunk:
        detail = chunk.get("errorDetail") or {}
        message = chunk.get("error") or detail.get("message") or "unknown build error"
        return "error", str(message).strip()

    stream = str(chunk.get("stream") or "").strip()
    if not stream:
        return None
    if BUILD_STEP.match(stream):
        return "info", stream
    if BUILD_SUCCESS.match(stream):
        return "success", stream
    return None


class DockerService:
    """Docker container lifecycle management.

    Handles building images, starting candidate containers, readiness
    checks, retiring previous instances and log/status retrieval.
    """

    # Default resource limits
    DEFAULT_CPU_PERIOD = 100000

    def __init__(
        self,
        client: Optional[Any] = None,
        port_allocator: Optional[PortAllocator] = None,
        readiness_timeout: Optional[float] = None,
        readiness_interval: Optional[float] = None,
        readiness_grace: Optional[float] = None,
        build_timeout: Optional[float] = None,
        healthcheck_path: Optional[str] = None,
    ) -> None:
        """Initialize the service; the Docker client connects on first use."""
        self._client = client
        self._ports = port_allocator
        self.readiness_timeout = readiness_timeout if readiness_timeout is not None else settings.readiness_timeout_seconds
        self.readiness_interval = readiness_interval if readiness_interval is not None else settings.readiness_poll_interval
        self.readiness_grace = readiness_grace if readiness_grace is not None else settings.readiness_grace_seconds
        self.build_timeout = build_timeout if build_timeout is not None else settings.image_build_timeout_seconds
        self.healthcheck_path = healthcheck_path if healthcheck_path is not None else settings.container_healthcheck_path

    @property
    def client(self) -> Any:
        """Docker client, connected on first use."""
        if self._client is None:
            try:
                client = docker.from_env()
                client.ping()
            except DockerException as e:
                logger.error(f"Failed to initialize Docker client: {e}")
                raise ContainerError(f"Docker not available: {e}")
            logger.info("Docker daemon connection verified")
            self._client = client
        return self._client

    @property
    def ports(self) -> PortAllocator:
        if self._ports is None:
            self._ports = PortAllocator(self.client)
        return self._ports

    @staticmethod
    def image_tag(project_id: int) -> str:
        return f"project-{project_id}:latest"

    @staticmethod
    def container_name(project_id: int) -> str:
        return f"project-{project_id}"

    async def _run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args, **kwargs))

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    async def build_and_deploy(
        self,
        workspace: Path,
        project_id: int,
        env_vars: Dict[str, str],
        log: "RunLog",
        start_command: Optional[str] = None,
    ) -> DeployedContainer:
        """Build the workspace into an image and swap it in as the live container.

        The new container must pass readiness before any previous instance
        is touched; on failure the previous instance keeps serving.

        Args:
            workspace: Build context directory
            project_id: Owning project
            env_vars: User environment variables
            log: Per-deployment log handle
            start_command: Overrides the synthesized recipe's start command

        Returns:
            DeployedContainer for the ready container

        Raises:
            BuildError: Image build failed or timed out
            ContainerError: Port exhaustion, start failure or readiness failure
        """
        dockerfile = await self.ensure_recipe(workspace, log, start_command)
        tag = self.image_tag(project_id)

        await log.info(f"Building image {tag}")
        await self.build_image(workspace, tag, dockerfile, log)

        host_port = await self.ports.allocate()
        candidate_name = self.candidate_name(project_id)
        try:
            container = await self._start_candidate(tag, candidate_name, project_id, host_port, env_vars)
            await log.info(f"Started container {container.short_id} on port {host_port}")
            await self.wait_until_ready(container.id, log)
        except BaseException:
            await self._remove_by_name(candidate_name)
            self.ports.release(host_port)
            raise

        await self.retire_project_containers(project_id, keep=container.id, log=log)
        name = await self._promote(container, project_id)

        await log.success(f"Container {container.short_id} is ready on port {host_port}")
        return DeployedContainer(container_id=container.id, host_port=host_port, image_tag=tag, name=name)

    def candidate_name(self, project_id: int) -> str:
        """Unique name for a new container until it replaces the live one."""
        return f"{self.container_name(project_id)}-{uuid.uuid4().hex[:8]}"

    async def _promote(self, container: Container, project_id: int) -> str:
        """Rename a ready container to the project's stable name.

        If an older container still holds the name it is removed once more
        and the rename retried. When that also fails the container keeps its
        unique candidate name, which no later deploy will reuse.
        """
        name = self.container_name(project_id)
        for attempt in range(2):
            try:
                await self._run(container.rename, name)
                return name
            except APIError as e:
                logger.warning(
                    "Could not rename container",
                    container=container.short_id,
                    attempt=attempt + 1,
                    error=str(e),
                )
            if attempt == 0:
                await self._remove_by_name(name, keep=container.id)
        return container.name

    async def ensure_recipe(self, workspace: Path, log: "RunLog", start_command: Optional[str] = None) -> str:
        """Return the Dockerfile path to build with, relative to ``workspace``."""
        if (workspace / "Dockerfile").is_file():
            await log.info("Using Dockerfile from repository")
            return "Dockerfile"

        dockerignore = workspace / ".dockerignore"
        if not dockerignore.exists():
            dockerignore.write_text(DOCKERIGNORE)

        recipe_dir = workspace / RECIPE_DIR
        recipe_dir.mkdir(exist_ok=True)
        (recipe_dir / "Dockerfile").write_text(
            render_dockerfile(start_command=start_command, healthcheck_path=self.healthcheck_path)
        )
        await log.info("No Dockerfile found, generated one for a Node.js server")
        return f"{RECIPE_DIR}/Dockerfile"

    async def iter_build_output(self, context_dir: Path, tag: str, dockerfile: str) -> AsyncIterator[Dict[str, Any]]:
        """Decoded image build stream as an async iterator.

        The low-level build API is a blocking generator; it is drained in a
        thread and handed over chunk by chunk. One pass only.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop_event = threading.Event()
        done = object()

        def put(item: Any) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # Event loop already closed
                pass

        def produce() -> None:
            try:
                stream = self.client.api.build(
                    path=str(context_dir),
                    dockerfile=dockerfile,
                    tag=tag,
                    rm=True,
                    forcerm=True,
                    decode=True,
                )
                for chunk in stream:
                    if stop_event.is_set():
                        break
                    put(chunk)
            except Exception as e:
                put(e)
            finally:
                put(done)

        thread = threading.Thread(target=produce, name=f"docker-build-{tag}", daemon=True)
        thread.start()

        try:
            while True:
                item = await queue.get()
                if item is done:
                    break
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            stop_event.set()

    async def build_image(self, context_dir: Path, tag: str, dockerfile: str, log: "RunLog") -> None:
        """Build an image, forwarding step, success and error lines to the log.

        Raises:
            BuildError: On a build error chunk, Docker API failure or timeout
        """
        command = f"docker build -f {dockerfile} -t {tag} ."
        logger.info(f"Building image {tag} from {context_dir}")

        async def consume() -> None:
            async with aclosing(self.iter_build_output(context_dir, tag, dockerfile)) as chunks:
                async for chunk in chunks:
                    classified = classify_build_chunk(chunk)
                    if classified is None:
                        continue
                    level, message = classified
                    if level == "error":
                        raise BuildError(f"Image build failed: {message}", command=command, output=message)
                    if level == "success":
                        await log.success(message)
                    else:
                        await log.info(message)

        try:
            await asyncio.wait_for(consume(), timeout=self.build_timeout)
        except asyncio.TimeoutError:
            raise BuildError(
                f"Image build timed out after {self.build_timeout}s",
                command=command,
                exit_code=None,
            )
        except DockerException as e:
            raise BuildError(f"Image build failed: {e}", command=command, output=str(e))

    async def _start_candidate(
        self,
        tag: str,
        name: str,
        project_id: int,
        host_port: int,
        env_vars: Dict[str, str],
    ) -> Container:
        """Create and start the container that will replace the live one."""
        environment = dict(env_vars)
        environment["PORT"] = str(settings.container_port)
        environment["PROJECT_ID"] = str(project_id)

        labels = {
            MANAGED_LABEL: "true",
            PROJECT_LABEL: str(project_id),
            PORT_LABEL: str(host_port),
        }

        kwargs: Dict[str, Any] = {
            "image": tag,
            "name": name,
            "labels": labels,
            "environment": environment,
            "ports": {f"{settings.container_port}/tcp": (settings.container_bind_host, host_port)},
            "cpu_period": self.DEFAULT_CPU_PERIOD,
            "cpu_quota": int(settings.container_cpu_limit * self.DEFAULT_CPU_PERIOD),
            "mem_limit": settings.container_memory_limit,
            "detach": True,
            "restart_policy": {"Name": "unless-stopped"},
        }
        if settings.docker_network:
            kwargs["network"] = settings.docker_network

        logger.info(f"Creating container {name} from image {tag}", host_port=host_port)
        try:
            container = await self._run(self.client.containers.create, **kwargs)
            await self._run(container.start)
            await self._run(container.reload)
        except DockerException as e:
            raise ContainerError(f"Failed to start container {name}: {e}")
        return container

    async def wait_until_ready(self, container_id: str, log: Optional["RunLog"] = None) -> None:
        """Wait for a container to become ready.

        With a healthcheck the container must report ``healthy``; without
        one it must still be running after a short grace period.

        Raises:
            ContainerError: On exit, crash loop, ``unhealthy`` or timeout,
                carrying the tail of the container log
        """
        if log is not None:
            await log.info("Waiting for container to become ready")

        async def check_ready() -> Optional[ContainerState]:
            state = await self.get_container_status(container_id)
            if state.status == "unknown":
                raise ContainerError("Container disappeared during startup")
            if state.restarting or state.status in ("exited", "dead"):
                raise ContainerError(f"Container exited during startup (exit code {state.exit_code})")
            if state.health == "unhealthy":
                raise ContainerError("Container health check reported unhealthy")
            if state.health == "healthy" or (state.health == "none" and state.running):
                return state
            return None

        try:
            state = await poll_until(
                check_ready,
                timeout=self.readiness_timeout,
                interval=self.readiness_interval,
                description=f"container {container_id[:12]} to become ready",
            )
            if state.health == "none":
                await asyncio.sleep(self.readiness_grace)
                await check_ready()
        except (ContainerError, PollTimeoutError) as e:
            logs = await self.get_container_logs(container_id, tail=READINESS_LOG_TAIL)
            raise ContainerError(e.message, logs=logs)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def retire_project_containers(
        self,
        project_id: int,
        keep: Optional[str] = None,
        log: Optional["RunLog"] = None,
    ) -> int:
        """Stop and remove every container of a project except ``keep``.

        Best-effort: failures are logged and skipped.

        Returns:
            Number of containers removed
        """
        containers = await self._run(
            self.client.containers.list,
            all=True,
            filters={"label": [f"{PROJECT_LABEL}={project_id}"]},
        )

        removed = 0
        for container in containers:
            if keep is not None and container.id == keep:
                continue
            info = self._container_to_info(container)
            if await self._stop_and_remove(container):
                removed += 1
                self.ports.release(info.host_port)
                if log is not None:
                    await log.info(f"Retired previous container {info.short_id}")
            elif log is not None:
                await log.warn(f"Could not remove previous container {info.short_id}")
        return removed

    async def stop_container(self, container_id: str) -> bool:
        """Stop and remove a container. Missing containers are not an error.

        Returns:
            True if a container was removed
        """
        try:
            container = await self._run(self.client.containers.get, container_id)
        except NotFound:
            return False
        except DockerException as e:
            logger.warning(f"Could not look up container {container_id}: {e}")
            return False

        info = self._container_to_info(container)
        removed = await self._stop_and_remove(container)
        if removed:
            self.ports.release(info.host_port)
        return removed

    async def _stop_and_remove(self, container: Container) -> bool:
        try:
            await self._run(container.stop, timeout=settings.container_stop_timeout)
        except NotFound:
            return True
        except DockerException as e:
            logger.warning(f"Failed to stop container {container.short_id}: {e}")
        try:
            await self._run(container.remove, force=True)
        except NotFound:
            return True
        except DockerException as e:
            logger.warning(f"Failed to remove container {container.short_id}: {e}")
            return False
        logger.info(f"Removed container {container.short_id}")
        return True

    async def _remove_by_name(self, name: str, keep: Optional[str] = None) -> None:
        try:
            container = await self._run(self.client.containers.get, name)
        except NotFound:
            return
        except DockerException as e:
            logger.warning(f"Could not look up container {name}: {e}")
            return
        if keep is not None and container.id == keep:
            return
        info = self._container_to_info(container)
        try:
            await self._run(container.remove, force=True)
            self.ports.release(info.host_port)
            logger.info(f"Removed container {name}")
        except DockerException as e:
            logger.warning(f"Failed to remove container {name}: {e}")

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def list_project_containers(self, project_id: int) -> List[ContainerInfo]:
        """All containers labeled with a project id, running or stopped."""
        containers = await self._run(
            self.client.containers.list,
            all=True,
            filters={"label": [f"{PROJECT_LABEL}={project_id}"]},
        )
        return [self._container_to_info(c) for c in containers]

    async def get_container_logs(self, container_id: str, tail: int = 100) -> str:
        """Last ``tail`` lines of a container's output, or "" if it is gone."""
        try:
            container = await self._run(self.client.containers.get, container_id)
            logs = await self._run(container.logs, tail=tail, stdout=True, stderr=True)
        except DockerException:
            return ""
        if isinstance(logs, bytes):
            return logs.decode("utf-8", errors="replace")
        return str(logs)

    async def get_container_status(self, container_id: str) -> ContainerState:
        """Current state of a container, or :meth:`ContainerState.unknown` if it is gone."""
        try:
            container = await self._run(self.client.containers.get, container_id)
        except NotFound:
            return ContainerState.unknown()
        except DockerException as e:
            logger.warning(f"Error checking container status: {e}")
            return ContainerState.unknown()
        return ContainerState.from_attrs(container.attrs or {})

    def _container_to_info(self, container: Container) -> ContainerInfo:
        """Convert Docker container to ContainerInfo."""
        return ContainerInfo(
            id=container.id,
            short_id=container.short_id,
            name=container.name,
            status=container.status,
            labels=dict(container.labels or {}),
        )

