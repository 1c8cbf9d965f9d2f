"""Pytest configuration and fixtures."""
import os

# Must be set before deployflow.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("BASE_DOMAIN", "deployflow.test")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from pathlib import Path
from typing import AsyncGenerator, Callable, Dict

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from git import Actor, Repo
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import deployflow.models  # noqa: F401
from deployflow.database import Base
from deployflow.services.infrastructure import (
    ArtifactPublisher,
    BuildExecutor,
    DockerService,
    NginxService,
    PortAllocator,
    RepositoryFetcher,
)
from deployflow.services.log_sink import DeploymentLogSink
from deployflow.services.orchestrator import DeploymentOrchestrator
from deployflow.services.project_store import ProjectStore
from deployflow.utils.security import create_access_token
from deployflow.websocket.redis_broadcaster import RedisBroadcaster
from fakes import OWNER_ID, TEST_BUCKET, FakeDockerClient, FakeS3Client, RecordingLog


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory bound to a fresh SQLite database per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'deployflow.db'}",
        echo=False,
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory: async_sessionmaker) -> ProjectStore:
    return ProjectStore(session_factory)


@pytest.fixture
def fake_redis() -> FakeAsyncRedis:
    return FakeAsyncRedis(decode_responses=True)


@pytest.fixture
def broadcaster(fake_redis: FakeAsyncRedis) -> RedisBroadcaster:
    return RedisBroadcaster(redis=fake_redis)


@pytest.fixture
def sink(store: ProjectStore, broadcaster: RedisBroadcaster) -> DeploymentLogSink:
    return DeploymentLogSink(store, broadcaster)


@pytest.fixture
def run_log() -> RecordingLog:
    return RecordingLog()


@pytest.fixture
def docker_client() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def docker_service(docker_client: FakeDockerClient) -> DockerService:
    """Runtime driver over the fake client with fast readiness polling."""
    return DockerService(
        client=docker_client,
        port_allocator=PortAllocator(docker_client, start=5000, end=5009),
        readiness_timeout=2.0,
        readiness_interval=0.01,
        readiness_grace=0.0,
        build_timeout=10.0,
    )


@pytest.fixture
def nginx(tmp_path: Path) -> NginxService:
    """Proxy driver writing into temp dirs, with no-op validate/reload."""
    return NginxService(
        sites_dir=str(tmp_path / "nginx" / "sites"),
        staging_dir=str(tmp_path / "nginx" / "staging"),
        validate_command=["true"],
        reload_command=["true"],
        base_domain="deployflow.test",
        ssl_certificate="/etc/nginx/ssl/test.pem",
        ssl_certificate_key="/etc/nginx/ssl/test.key",
    )


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    return tmp_path / "workspaces"


@pytest_asyncio.fixture(scope="function")
async def orchestrator(
    store: ProjectStore,
    sink: DeploymentLogSink,
    s3_client: FakeS3Client,
    docker_service: DockerService,
    nginx: NginxService,
    workspace_root: Path,
) -> AsyncGenerator[DeploymentOrchestrator, None]:
    """Orchestrator wired to real git and shell, fake S3 and Docker."""
    orchestrator = DeploymentOrchestrator(
        store=store,
        sink=sink,
        fetcher=RepositoryFetcher(timeout=30),
        builder=BuildExecutor(install_command="true", timeout=30, line_limit=500),
        publisher=ArtifactPublisher(client=s3_client, bucket=TEST_BUCKET, key_prefix="projects"),
        runtime=docker_service,
        proxy=nginx,
        workspace_root=str(workspace_root),
    )
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
def make_repo(tmp_path: Path) -> Callable[..., str]:
    """Create a committed local Git repository and return its path."""
    counter = {"n": 0}

    def factory(files: Dict[str, str]) -> str:
        counter["n"] += 1
        path = tmp_path / "repos" / f"repo-{counter['n']}"
        path.mkdir(parents=True)
        repo = Repo.init(path)
        for relative, content in files.items():
            target = path / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        repo.index.add(list(files))
        actor = Actor("DeployFlow Tests", "tests@deployflow.test")
        repo.index.commit("Initial commit", author=actor, committer=actor)
        return str(path)

    return factory


@pytest.fixture
def static_repo(make_repo: Callable[..., str]) -> str:
    return make_repo({
        "package.json": '{"name": "site", "scripts": {"build": "vite build"}}\n',
        "src/index.html": "<h1>hello</h1>\n",
    })


@pytest.fixture
def server_repo(make_repo: Callable[..., str]) -> str:
    return make_repo({
        "package.json": '{"name": "api", "scripts": {"start": "node server.js"}}\n',
        "server.js": "require('http').createServer((q, s) => s.end('ok')).listen(process.env.PORT)\n",
    })


@pytest.fixture
def static_project_data(static_repo: str) -> dict:
    """Static project whose build writes dist/index.html.

    Returns:
        Dictionary with project fields
    """
    return {
        "name": "Marketing Site",
        "repo_url": static_repo,
        "subdomain": "Marketing Site",
        "build_mode": "static",
        "build_command": "mkdir -p dist && cp src/index.html dist/index.html",
        "publish_directory": "dist",
    }


@pytest.fixture
def server_project_data(server_repo: str) -> dict:
    """Server project with one environment variable.

    Returns:
        Dictionary with project fields
    """
    return {
        "name": "Orders API",
        "repo_url": server_repo,
        "subdomain": "orders-api",
        "build_mode": "server",
        "env_vars": {"DATABASE_URL": "postgres://db/orders"},
    }


@pytest.fixture
def auth_headers() -> dict:
    """Authorization header with a token for the test owner.

    Returns:
        Dictionary with Authorization header
    """
    token = create_access_token({"sub": str(OWNER_ID)})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture(scope="function")
async def client(orchestrator: DeploymentOrchestrator) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the test orchestrator installed.

    Yields:
        AsyncClient for making test requests
    """
    from deployflow.main import app

    app.state.orchestrator = orchestrator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    del app.state.orchestrator
