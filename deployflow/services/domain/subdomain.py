"""Subdomain normalization and workspace path checks."""
import re
from pathlib import Path, PurePosixPath

# DNS label limit
MAX_SUBDOMAIN_LENGTH = 63


def normalize_subdomain(value: str) -> str:
    """Normalize user input into a DNS-safe subdomain label.

    Lowercases, turns whitespace, underscores, dots and slashes into hyphens,
    strips anything outside ``[a-z0-9-]``, collapses repeated hyphens and
    trims them from both ends.

    Args:
        value: Raw subdomain as entered by the user

    Returns:
        Normalized subdomain, possibly empty
    """
    normalized = value.strip().lower()
    normalized = re.sub(r"[\s_./]+", "-", normalized)
    normalized = re.sub(r"[^a-z0-9-]", "", normalized)
    normalized = re.sub(r"-+", "-", normalized)
    return normalized.strip("-")[:MAX_SUBDOMAIN_LENGTH].strip("-")


def is_safe_relative_path(value: str) -> bool:
    """Check that a configured directory stays inside the workspace.

    Accepts ``.`` and plain relative paths; rejects absolute paths and any
    ``..`` component.
    """
    if not value:
        return False
    path = PurePosixPath(value.replace("\\", "/"))
    if path.is_absolute():
        return False
    return ".." not in path.parts


def resolve_within(base: Path, relative: str) -> Path:
    """Resolve ``relative`` under ``base``, refusing to escape it.

    Raises:
        ValueError: If the resolved path is outside ``base``
    """
    base_resolved = base.resolve()
    target = (base_resolved / relative).resolve()
    if target != base_resolved and base_resolved not in target.parents:
        raise ValueError(f"Path '{relative}' escapes the workspace")
    return target
