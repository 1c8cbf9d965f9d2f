"""Domain logic - build plans, artifacts, subdomains."""
from deployflow.services.domain.deployment import (
    BuildSpec,
    PublishedArtifact,
    ServerArtifact,
    ServerBuildSpec,
    StaticArtifact,
    StaticBuildSpec,
    build_spec_for,
)
from deployflow.services.domain.subdomain import is_safe_relative_path, normalize_subdomain, resolve_within

__all__ = [
    "BuildSpec",
    "PublishedArtifact",
    "ServerArtifact",
    "ServerBuildSpec",
    "StaticArtifact",
    "StaticBuildSpec",
    "build_spec_for",
    "is_safe_relative_path",
    "normalize_subdomain",
    "resolve_within",
]
