"""Build plans and published artifacts, one case per build mode."""
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from deployflow.models.project import BuildMode, Project


@dataclass(frozen=True)
class StaticBuildSpec:
    """Install, build and upload a file tree."""
    root_directory: str
    build_command: str
    publish_directory: str


@dataclass(frozen=True)
class ServerBuildSpec:
    """Build an image and run it as a container."""
    root_directory: str
    env_vars: Dict[str, str] = field(default_factory=dict)
    start_command: Optional[str] = None


BuildSpec = Union[StaticBuildSpec, ServerBuildSpec]


@dataclass(frozen=True)
class StaticArtifact:
    """Files published under an object storage prefix."""
    s3_path: str


@dataclass(frozen=True)
class ServerArtifact:
    """A running container reachable on a host port."""
    container_id: str
    host_port: int


PublishedArtifact = Union[StaticArtifact, ServerArtifact]


def build_spec_for(project: Project) -> BuildSpec:
    """Derive the build plan for a project from its configuration.

    Raises:
        ValueError: For a build mode without a plan
    """
    if project.build_mode == BuildMode.STATIC:
        return StaticBuildSpec(
            root_directory=project.root_directory or ".",
            build_command=project.build_command,
            publish_directory=project.publish_directory or "dist",
        )
    if project.build_mode == BuildMode.SERVER:
        return ServerBuildSpec(
            root_directory=project.root_directory or ".",
            env_vars=dict(project.env_vars or {}),
            start_command=project.start_command,
        )
    raise ValueError(f"Unsupported build mode: {project.build_mode!r}")
