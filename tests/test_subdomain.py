"""Tests for subdomain normalization and workspace path checks."""
from pathlib import Path

import pytest

from deployflow.services.domain import is_safe_relative_path, normalize_subdomain, resolve_within


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("My App", "my-app"),
        ("  Hello_World.v2 ", "hello-world-v2"),
        ("--a--b--", "a-b"),
        ("shop/front end", "shop-front-end"),
        ("Café Ünïcode", "caf-ncode"),
        ("already-fine-123", "already-fine-123"),
        ("!!!", ""),
    ],
)
def test_normalize_subdomain(raw: str, expected: str) -> None:
    """Test user input is reduced to a DNS-safe label."""
    assert normalize_subdomain(raw) == expected


def test_normalize_subdomain_is_idempotent() -> None:
    """Test normalizing twice gives the same result."""
    once = normalize_subdomain("Some Project_Name")
    assert normalize_subdomain(once) == once


def test_normalize_subdomain_respects_label_length() -> None:
    """Test long input is cut to 63 characters without a trailing hyphen."""
    result = normalize_subdomain("a" * 62 + " b" * 10)
    assert len(result) <= 63
    assert not result.endswith("-")
    assert result.startswith("a" * 62)


@pytest.mark.parametrize("value", [".", "dist", "apps/web", "build/output/"])
def test_safe_relative_paths(value: str) -> None:
    assert is_safe_relative_path(value)


@pytest.mark.parametrize("value", ["", "/etc", "../secrets", "apps/../../etc", "..\\windows"])
def test_unsafe_relative_paths(value: str) -> None:
    assert not is_safe_relative_path(value)


def test_resolve_within_allows_nested_paths(tmp_path: Path) -> None:
    (tmp_path / "apps" / "web").mkdir(parents=True)
    assert resolve_within(tmp_path, "apps/web") == (tmp_path / "apps" / "web").resolve()
    assert resolve_within(tmp_path, ".") == tmp_path.resolve()


def test_resolve_within_rejects_escapes(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        resolve_within(tmp_path / "workspace", "../outside")


def test_resolve_within_rejects_symlink_escape(tmp_path: Path) -> None:
    """Test a symlink pointing outside the workspace is refused."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    (workspace / "link").symlink_to(tmp_path)

    with pytest.raises(ValueError):
        resolve_within(workspace, "link")
