"""Shell build step execution.

Runs install/build commands inside the cloned workspace and forwards their
output to the deployment log.
"""
import asyncio
import os
import re
import signal
from collections import deque
from pathlib import Path
from typing import TYPE_CHECKING, Deque, Optional

from deployflow.config import settings
from deployflow.exceptions import BuildError
from deployflow.services.domain import StaticBuildSpec
from deployflow.utils.logging import get_logger

if TYPE_CHECKING:
    from deployflow.services.log_sink import RunLog

logger = get_logger(__name__)

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")

# Lines kept for the error message of a failed command
OUTPUT_TAIL_LINES = 50

# Bytes read from the command per call
READ_CHUNK = 64 * 1024

# A line longer than this is split; forwarded lines are cut to MAX_LINE_CHARS
STREAM_LIMIT = 1024 * 1024
MAX_LINE_CHARS = 4000


def clean_output_line(raw: bytes) -> str:
    """Decode one line of process output and strip terminal escape codes."""
    text = ANSI_ESCAPE.sub("", raw.decode("utf-8", errors="replace")).rstrip()
    if len(text) > MAX_LINE_CHARS:
        return text[:MAX_LINE_CHARS] + " [truncated]"
    return text


class BuildExecutor:
    """Runs shell build commands with a timeout and a log line cap."""

    def __init__(
        self,
        install_command: Optional[str] = None,
        timeout: Optional[float] = None,
        line_limit: Optional[int] = None,
    ) -> None:
        self.install_command = install_command or settings.static_install_command
        self.timeout = timeout if timeout is not None else settings.build_timeout_seconds
        self.line_limit = line_limit if line_limit is not None else settings.build_log_line_limit

    async def run(self, command: str, working_directory: Path, log: "RunLog") -> None:
        """Run a shell command, streaming its merged output to the run log.

        Args:
            command: Shell command line
            working_directory: Directory the command runs in
            log: Per-deployment log handle

        Raises:
            BuildError: On nonzero exit or timeout (``exit_code`` is None on timeout)
        """
        await log.info(f"$ {command}")
        logger.info("Running build command", command=command, cwd=str(working_directory))

        env = os.environ.copy()
        env["CI"] = "true"

        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(working_directory),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=env,
            start_new_session=True,
        )

        tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        counts = {"forwarded": 0, "suppressed": 0}

        async def forward(line: bytes) -> None:
            text = clean_output_line(line)
            if not text.strip():
                return
            tail.append(text)
            if counts["forwarded"] < self.line_limit:
                counts["forwarded"] += 1
                await log.info(text)
            else:
                counts["suppressed"] += 1

        async def pump() -> None:
            buffer = b""
            while True:
                chunk = await process.stdout.read(READ_CHUNK)
                if not chunk:
                    break
                *lines, buffer = (buffer + chunk).split(b"\n")
                if len(buffer) >= STREAM_LIMIT:
                    lines.append(buffer)
                    buffer = b""
                for line in lines:
                    await forward(line)
            if buffer:
                await forward(buffer)
            await process.wait()

        try:
            await asyncio.wait_for(pump(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._kill(process)
            await process.wait()
            raise BuildError(
                f"Command timed out after {self.timeout}s: {command}",
                command=command,
                exit_code=None,
                output="\n".join(tail),
            )
        finally:
            # No-op once the command has exited
            self._kill(process)

        if counts["suppressed"]:
            await log.info(f"... {counts['suppressed']} more lines")

        if process.returncode != 0:
            logger.warning("Build command failed", command=command, exit_code=process.returncode)
            raise BuildError(
                f"Command failed with exit code {process.returncode}: {command}",
                command=command,
                exit_code=process.returncode,
                output="\n".join(tail),
            )

    async def run_static_build(self, spec: StaticBuildSpec, working_directory: Path, log: "RunLog") -> None:
        """Install dependencies, then run the project's build command."""
        await log.info("Installing dependencies")
        await self.run(self.install_command, working_directory, log)
        await log.info("Running build command")
        await self.run(spec.build_command, working_directory, log)

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        """Kill the command and anything it spawned."""
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
