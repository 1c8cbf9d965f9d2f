"""End-to-end tests for the deployment pipeline.

Runs real git clones and shell builds against fake S3 and Docker clients.
"""
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import patch

import pytest
from fakeredis import FakeAsyncRedis

from deployflow.config import settings
from deployflow.exceptions import DeployFlowError, DeploymentInProgressError, ProjectNotFoundError
from deployflow.models import DeploymentStatus, LogLevel, Project, ProjectStatus
from deployflow.schemas import ProjectCreate
from deployflow.services.infrastructure import NginxService
from deployflow.services.orchestrator import DeploymentOrchestrator
from deployflow.services.project_store import INTERRUPTED_MESSAGE, ProjectStore
from deployflow.websocket import project_channel
from fakes import OWNER_ID, TEST_BUCKET, FakeDockerClient, FakeS3Client


async def create(store: ProjectStore, data: Dict[str, Any], **overrides: Any) -> Project:
    return await store.create_project(OWNER_ID, ProjectCreate(**{**data, **overrides}))


async def deploy_and_wait(orchestrator: DeploymentOrchestrator, project_id: int) -> Project:
    await orchestrator.deploy(project_id, OWNER_ID)
    await orchestrator.wait(project_id)
    return await orchestrator.store.get_project(project_id)


async def drain(pubsub: Any) -> List[Dict[str, Any]]:
    events = []
    while True:
        message = await pubsub.get_message(timeout=0.05)
        if message is None:
            return events
        if message["type"] != "message":
            continue
        events.append(json.loads(message["data"]))


# ----------------------------------------------------------------------
# Static sites
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_static_deploy(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    s3_client: FakeS3Client,
    fake_redis: FakeAsyncRedis,
    static_project_data: dict,
    workspace_root: Path,
) -> None:
    """Test a static project is cloned, built, uploaded and recorded."""
    project = await create(store, static_project_data)
    pubsub = fake_redis.pubsub()
    await pubsub.subscribe(project_channel(project.id))

    project = await deploy_and_wait(orchestrator, project.id)

    url = settings.project_url("marketing-site")
    assert project.status == ProjectStatus.RUNNING
    assert project.deploy_url == url
    assert project.s3_path == "projects/marketing-site"
    assert project.current_deployment.status == DeploymentStatus.RUNNING
    assert project.current_deployment.deploy_url == url

    assert s3_client.keys(TEST_BUCKET) == ["projects/marketing-site/index.html"]
    uploaded = s3_client.buckets[TEST_BUCKET]["projects/marketing-site/index.html"]
    assert uploaded["Body"] == b"<h1>hello</h1>\n"
    assert uploaded["ContentType"] == "text/html"

    entries = await orchestrator.get_logs(project.id, OWNER_ID)
    messages = [e.message for e in entries]
    assert messages[0] == "Starting deployment of Marketing Site (static mode)"
    assert "Repository cloned" in messages
    assert "$ mkdir -p dist && cp src/index.html dist/index.html" in messages
    assert "Uploaded 1 files" in messages
    assert (entries[-1].level, entries[-1].message) == (LogLevel.SUCCESS, f"Deployment successful: {url}")

    assert list(workspace_root.iterdir()) == []
    assert not orchestrator.is_deploying(project.id)

    events = await drain(pubsub)
    statuses = [e["status"] for e in events if e["type"] == "deployment-status"]
    assert statuses == ["deploying", "running"]
    assert len([e for e in events if e["type"] == "deployment-log"]) == len(entries)
    await pubsub.aclose()


@pytest.mark.asyncio
async def test_static_build_failure(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    s3_client: FakeS3Client,
    static_project_data: dict,
    workspace_root: Path,
) -> None:
    """Test a failing build marks the run failed and cleans the workspace."""
    project = await create(store, static_project_data, build_command="echo compile error && exit 2")

    project = await deploy_and_wait(orchestrator, project.id)

    assert project.status == ProjectStatus.FAILED
    assert project.s3_path is None
    current = project.current_deployment
    assert current.status == DeploymentStatus.FAILED
    assert "exit code 2" in current.error_message

    entries = await orchestrator.get_logs(project.id, OWNER_ID)
    assert "compile error" in [e.message for e in entries]
    assert entries[-1].level == LogLevel.ERROR
    assert entries[-1].message.startswith("Deployment failed: ")

    assert s3_client.keys(TEST_BUCKET) == []
    assert list(workspace_root.iterdir()) == []


@pytest.mark.asyncio
async def test_missing_publish_directory(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    static_project_data: dict,
) -> None:
    project = await create(store, static_project_data, build_command="true", publish_directory="build")

    project = await deploy_and_wait(orchestrator, project.id)

    assert project.status == ProjectStatus.FAILED
    assert "Publish directory 'build' not found" in project.current_deployment.error_message


@pytest.mark.asyncio
async def test_missing_root_directory(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    static_project_data: dict,
) -> None:
    project = await create(store, static_project_data, root_directory="apps/web")

    project = await deploy_and_wait(orchestrator, project.id)

    assert project.status == ProjectStatus.FAILED
    assert "Root directory 'apps/web' not found" in project.current_deployment.error_message


@pytest.mark.asyncio
async def test_clone_failure(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    static_project_data: dict,
    tmp_path: Path,
) -> None:
    project = await create(store, static_project_data, repo_url=f"file://{tmp_path / 'gone'}")

    project = await deploy_and_wait(orchestrator, project.id)

    assert project.status == ProjectStatus.FAILED
    assert "Failed to clone" in project.current_deployment.error_message


@pytest.mark.asyncio
async def test_stop_static_project(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    s3_client: FakeS3Client,
    static_project_data: dict,
) -> None:
    """Test stopping removes the uploaded files and is safe to repeat."""
    project = await create(store, static_project_data)
    await deploy_and_wait(orchestrator, project.id)

    stopped = await orchestrator.stop(project.id, OWNER_ID)

    assert stopped.status == ProjectStatus.STOPPED
    assert stopped.deploy_url is None
    assert stopped.s3_path is None
    assert stopped.current_deployment.status == DeploymentStatus.STOPPED
    assert s3_client.keys(TEST_BUCKET) == []

    again = await orchestrator.stop(project.id, OWNER_ID)
    assert again.status == ProjectStatus.STOPPED


# ----------------------------------------------------------------------
# Server apps
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_server_deploy(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    docker_client: FakeDockerClient,
    nginx: NginxService,
    server_project_data: dict,
) -> None:
    """Test a server project runs as a labeled container behind nginx."""
    project = await create(store, server_project_data)

    project = await deploy_and_wait(orchestrator, project.id)

    assert project.status == ProjectStatus.RUNNING
    containers = docker_client.project_containers(project.id)
    assert len(containers) == 1
    container = containers[0]
    assert container.status == "running"
    assert container.environment["DATABASE_URL"] == "postgres://db/orders"
    assert project.container_id == container.id
    assert project.host_port == int(container.labels["deployflow.port"])
    assert project.current_deployment.container_id == container.id

    rule = nginx.read_rule("orders-api")
    assert f"proxy_pass http://127.0.0.1:{project.host_port};" in rule

    status = await orchestrator.container_status(project.id, OWNER_ID)
    assert status.running is True
    assert status.container_id == container.id
    assert status.logs == "listening on 3000\n"


@pytest.mark.asyncio
async def test_server_redeploy(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    docker_client: FakeDockerClient,
    nginx: NginxService,
    server_project_data: dict,
) -> None:
    """Test a redeploy leaves exactly one container and two history entries."""
    project = await create(store, server_project_data)
    first = await deploy_and_wait(orchestrator, project.id)
    second = await deploy_and_wait(orchestrator, project.id)

    assert second.status == ProjectStatus.RUNNING
    assert second.container_id != first.container_id
    assert [c.id for c in docker_client.project_containers(project.id)] == [second.container_id]
    assert f"127.0.0.1:{second.host_port};" in nginx.read_rule("orders-api")

    history = await orchestrator.list_deployments(project.id, OWNER_ID)
    assert len(history) == 2
    assert [d.is_current for d in history] == [False, True]


@pytest.mark.asyncio
async def test_failed_server_redeploy_keeps_previous(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    docker_client: FakeDockerClient,
    nginx: NginxService,
    server_project_data: dict,
) -> None:
    """Test a crashing new version leaves the previous container serving."""
    project = await create(store, server_project_data)
    first = await deploy_and_wait(orchestrator, project.id)

    docker_client.start_behavior = "crash"
    docker_client.container_output = "TypeError: undefined is not a function\n"
    failed = await deploy_and_wait(orchestrator, project.id)

    assert failed.status == ProjectStatus.FAILED
    assert failed.container_id == first.container_id
    assert failed.host_port == first.host_port
    assert "TypeError: undefined is not a function" in failed.current_deployment.error_message

    containers = docker_client.project_containers(project.id)
    assert [c.id for c in containers] == [first.container_id]
    assert containers[0].status == "running"
    assert f"127.0.0.1:{first.host_port};" in nginx.read_rule("orders-api")


@pytest.mark.asyncio
async def test_proxy_rejection_fails_deployment(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    nginx: NginxService,
    server_project_data: dict,
) -> None:
    nginx.validate_command = ["sh", "-c", "echo 'nginx: [emerg] bad config' >&2; exit 1"]
    project = await create(store, server_project_data)

    project = await deploy_and_wait(orchestrator, project.id)

    assert project.status == ProjectStatus.FAILED
    assert "nginx rejected configuration" in project.current_deployment.error_message
    assert nginx.read_rule("orders-api") is None


@pytest.mark.asyncio
async def test_delete_server_project(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    docker_client: FakeDockerClient,
    nginx: NginxService,
    server_project_data: dict,
) -> None:
    """Test deleting removes the container, the route and the project."""
    project = await create(store, server_project_data)
    await deploy_and_wait(orchestrator, project.id)

    await orchestrator.delete(project.id, OWNER_ID)

    assert docker_client.project_containers(project.id) == []
    assert nginx.read_rule("orders-api") is None
    with pytest.raises(ProjectNotFoundError):
        await store.get_project(project.id)


@pytest.mark.asyncio
async def test_delete_completes_when_route_cannot_be_removed(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    docker_client: FakeDockerClient,
    nginx: NginxService,
    server_project_data: dict,
) -> None:
    """Test teardown carries on when the proxy rule file cannot be deleted."""
    project = await create(store, server_project_data)
    await deploy_and_wait(orchestrator, project.id)

    with patch.object(Path, "unlink", side_effect=PermissionError("read-only file system")):
        await orchestrator.delete(project.id, OWNER_ID)

    assert docker_client.project_containers(project.id) == []
    assert nginx.read_rule("orders-api") is not None
    with pytest.raises(ProjectNotFoundError):
        await store.get_project(project.id)


@pytest.mark.asyncio
async def test_stop_server_project(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    docker_client: FakeDockerClient,
    nginx: NginxService,
    server_project_data: dict,
) -> None:
    project = await create(store, server_project_data)
    await deploy_and_wait(orchestrator, project.id)

    stopped = await orchestrator.stop(project.id, OWNER_ID)

    assert stopped.status == ProjectStatus.STOPPED
    assert stopped.container_id is None
    assert docker_client.project_containers(project.id) == []
    assert nginx.read_rule("orders-api") is None

    status = await orchestrator.container_status(project.id, OWNER_ID)
    assert status.status == "not deployed"
    assert status.running is False


@pytest.mark.asyncio
async def test_container_status_for_static_project(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    static_project_data: dict,
) -> None:
    project = await create(store, static_project_data)

    with pytest.raises(DeployFlowError) as exc_info:
        await orchestrator.container_status(project.id, OWNER_ID)

    assert exc_info.value.status_code == 400


# ----------------------------------------------------------------------
# Concurrency and lifecycle
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_single_flight(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    static_project_data: dict,
) -> None:
    """Test a second deploy, stop or delete is refused while one runs."""
    project = await create(store, static_project_data)

    accepted = await orchestrator.deploy(project.id, OWNER_ID)
    assert accepted.status == "accepted"
    assert orchestrator.is_deploying(project.id)

    with pytest.raises(DeploymentInProgressError):
        await orchestrator.deploy(project.id, OWNER_ID)
    with pytest.raises(DeploymentInProgressError):
        await orchestrator.stop(project.id, OWNER_ID)
    with pytest.raises(DeploymentInProgressError):
        await orchestrator.delete(project.id, OWNER_ID)

    await orchestrator.wait(project.id)

    history = await orchestrator.list_deployments(project.id, OWNER_ID)
    assert [d.id for d in history] == [accepted.deployment_id]
    assert history[0].status == DeploymentStatus.RUNNING


@pytest.mark.asyncio
async def test_deploy_unknown_project_releases_claim(orchestrator: DeploymentOrchestrator) -> None:
    with pytest.raises(ProjectNotFoundError):
        await orchestrator.deploy(404, OWNER_ID)
    assert not orchestrator.is_deploying(404)


@pytest.mark.asyncio
async def test_other_owner_cannot_deploy(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    static_project_data: dict,
) -> None:
    project = await create(store, static_project_data)

    with pytest.raises(ProjectNotFoundError):
        await orchestrator.deploy(project.id, OWNER_ID + 1)
    with pytest.raises(ProjectNotFoundError):
        await orchestrator.get_logs(project.id, OWNER_ID + 1)


@pytest.mark.asyncio
async def test_recover_interrupted(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    static_project_data: dict,
    workspace_root: Path,
) -> None:
    """Test startup recovery fails orphaned runs and clears stale workspaces."""
    project = await create(store, static_project_data)
    await store.start_deployment(project.id)
    leftover = workspace_root / "marketing-site-deadbeef"
    leftover.mkdir(parents=True)
    (leftover / "index.html").write_text("stale")

    assert await orchestrator.recover_interrupted() == 1

    reloaded = await store.get_project(project.id)
    assert reloaded.status == ProjectStatus.FAILED
    assert reloaded.current_deployment.error_message == INTERRUPTED_MESSAGE
    assert not leftover.exists()


@pytest.mark.asyncio
async def test_shutdown_cancels_running_deployments(
    orchestrator: DeploymentOrchestrator,
    store: ProjectStore,
    static_project_data: dict,
) -> None:
    """Test in-flight runs are cancelled and recorded as failed on shutdown."""
    project = await create(store, static_project_data, build_command="sleep 30")
    await orchestrator.deploy(project.id, OWNER_ID)

    for _ in range(200):
        entries = await store.get_current_logs(project.id)
        if "$ sleep 30" in [e.message for e in entries]:
            break
        await asyncio.sleep(0.05)
    else:
        pytest.fail("build never started")

    await orchestrator.shutdown()

    reloaded = await store.get_project(project.id)
    assert reloaded.status == ProjectStatus.FAILED
    assert reloaded.current_deployment.error_message == "Deployment cancelled"
    assert not orchestrator.is_deploying(project.id)
