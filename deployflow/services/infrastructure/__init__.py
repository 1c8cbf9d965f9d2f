"""Infrastructure services - git, build, storage, docker, nginx."""
from deployflow.services.infrastructure.build import BuildExecutor
from deployflow.services.infrastructure.docker import (
    ContainerInfo,
    ContainerState,
    DeployedContainer,
    DockerService,
    classify_build_chunk,
    render_dockerfile,
)
from deployflow.services.infrastructure.git import RepositoryFetcher, redact_url
from deployflow.services.infrastructure.nginx import NginxService
from deployflow.services.infrastructure.ports import PortAllocator
from deployflow.services.infrastructure.storage import ArtifactPublisher

__all__ = [
    "ArtifactPublisher",
    "BuildExecutor",
    "ContainerInfo",
    "ContainerState",
    "DeployedContainer",
    "DockerService",
    "NginxService",
    "PortAllocator",
    "RepositoryFetcher",
    "classify_build_chunk",
    "redact_url",
    "render_dockerfile",
]
