"""Tests for shell build step execution."""
import asyncio
from pathlib import Path

import pytest

from deployflow.exceptions import BuildError
from deployflow.services.domain import StaticBuildSpec
from deployflow.services.infrastructure import BuildExecutor
from deployflow.services.infrastructure.build import clean_output_line
from fakes import RecordingLog


def test_clean_output_line_strips_ansi() -> None:
    assert clean_output_line(b"\x1b[32m\xe2\x9c\x93 built\x1b[0m\r\n") == "✓ built"


@pytest.mark.asyncio
async def test_run_forwards_output(tmp_path: Path, run_log: RecordingLog) -> None:
    """Test command and output lines reach the run log."""
    executor = BuildExecutor(install_command="true", timeout=10)

    await executor.run("echo hello && echo world >&2", tmp_path, run_log)

    assert run_log.messages[0] == "$ echo hello && echo world >&2"
    assert "hello" in run_log.messages
    assert "world" in run_log.messages


@pytest.mark.asyncio
async def test_run_sets_ci_environment(tmp_path: Path, run_log: RecordingLog) -> None:
    executor = BuildExecutor(install_command="true", timeout=10)

    await executor.run('echo "ci=$CI"', tmp_path, run_log)

    assert "ci=true" in run_log.messages


@pytest.mark.asyncio
async def test_run_uses_working_directory(tmp_path: Path, run_log: RecordingLog) -> None:
    (tmp_path / "marker.txt").write_text("x")
    executor = BuildExecutor(install_command="true", timeout=10)

    await executor.run("ls", tmp_path, run_log)

    assert "marker.txt" in run_log.messages


@pytest.mark.asyncio
async def test_nonzero_exit_raises(tmp_path: Path, run_log: RecordingLog) -> None:
    """Test a failing command raises BuildError with exit code and output tail."""
    executor = BuildExecutor(install_command="true", timeout=10)

    with pytest.raises(BuildError) as exc_info:
        await executor.run("echo boom; exit 3", tmp_path, run_log)

    error = exc_info.value
    assert error.exit_code == 3
    assert error.command == "echo boom; exit 3"
    assert "boom" in error.output
    assert "exit code 3" in error.message


@pytest.mark.asyncio
async def test_timeout_kills_command(tmp_path: Path, run_log: RecordingLog) -> None:
    """Test a command exceeding the timeout is killed and reported."""
    executor = BuildExecutor(install_command="true", timeout=0.3)

    with pytest.raises(BuildError) as exc_info:
        await executor.run("sleep 5", tmp_path, run_log)

    assert exc_info.value.exit_code is None
    assert "timed out" in exc_info.value.message


@pytest.mark.asyncio
async def test_line_limit_summarizes_excess(tmp_path: Path, run_log: RecordingLog) -> None:
    """Test output beyond the line cap is counted, not forwarded."""
    executor = BuildExecutor(install_command="true", timeout=10, line_limit=3)

    await executor.run("for i in 1 2 3 4 5; do echo line$i; done", tmp_path, run_log)

    assert "line3" in run_log.messages
    assert "line4" not in run_log.messages
    assert run_log.messages[-1] == "... 2 more lines"


@pytest.mark.asyncio
async def test_blank_lines_are_skipped(tmp_path: Path, run_log: RecordingLog) -> None:
    executor = BuildExecutor(install_command="true", timeout=10)

    await executor.run("echo; echo '   '; echo done", tmp_path, run_log)

    assert run_log.messages == ["$ echo; echo '   '; echo done", "done"]


@pytest.mark.asyncio
async def test_static_build_installs_then_builds(tmp_path: Path, run_log: RecordingLog) -> None:
    """Test the install command runs before the project's build command."""
    executor = BuildExecutor(install_command="echo installing", timeout=10)
    spec = StaticBuildSpec(root_directory=".", build_command="echo building", publish_directory="dist")

    await executor.run_static_build(spec, tmp_path, run_log)

    messages = run_log.messages
    assert messages.index("installing") < messages.index("building")


@pytest.mark.asyncio
async def test_static_build_stops_on_install_failure(tmp_path: Path, run_log: RecordingLog) -> None:
    executor = BuildExecutor(install_command="exit 1", timeout=10)
    spec = StaticBuildSpec(root_directory=".", build_command="echo building", publish_directory="dist")

    with pytest.raises(BuildError):
        await executor.run_static_build(spec, tmp_path, run_log)

    assert "building" not in run_log.messages


class FailingLog(RecordingLog):
    """Run log whose writes fail after the command line is recorded."""

    async def info(self, message: str) -> None:
        if self.entries:
            raise RuntimeError("log store unavailable")
        await super().info(message)


@pytest.mark.asyncio
async def test_overlong_line_is_split_and_truncated(tmp_path: Path, run_log: RecordingLog) -> None:
    """Test a single line larger than the stream limit does not break the run."""
    executor = BuildExecutor(install_command="true", timeout=30)

    await executor.run("head -c 2000000 /dev/zero | tr '\\0' x; echo; echo done", tmp_path, run_log)

    assert run_log.messages[-1] == "done"
    long_lines = [m for m in run_log.messages if m.startswith("xxxx")]
    assert long_lines
    assert all(m.endswith(" [truncated]") for m in long_lines)


@pytest.mark.asyncio
async def test_overlong_line_before_failure_reports_exit_code(tmp_path: Path, run_log: RecordingLog) -> None:
    executor = BuildExecutor(install_command="true", timeout=30)

    with pytest.raises(BuildError) as exc_info:
        await executor.run("head -c 2000000 /dev/zero | tr '\\0' x; exit 4", tmp_path, run_log)

    assert exc_info.value.exit_code == 4


@pytest.mark.asyncio
async def test_command_is_killed_when_forwarding_fails(tmp_path: Path) -> None:
    """Test the command does not outlive a run that failed while reading its output."""
    executor = BuildExecutor(install_command="true", timeout=30)
    marker = tmp_path / "marker"

    with pytest.raises(RuntimeError):
        await executor.run(f"echo started; sleep 1; touch {marker}", tmp_path, FailingLog())

    await asyncio.sleep(1.5)
    assert not marker.exists()
