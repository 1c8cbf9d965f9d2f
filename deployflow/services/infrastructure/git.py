"""Repository fetching using GitPython.

Shallow-clones a project's repository into a fresh build workspace.
"""
import asyncio
import os
import re
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Tuple
from urllib.parse import urlsplit

from git import Git, GitCommandError, GitCommandNotFound

from deployflow.config import settings
from deployflow.exceptions import FetchError
from deployflow.utils.logging import get_logger, redact_url

if TYPE_CHECKING:
    from deployflow.services.log_sink import RunLog

logger = get_logger(__name__)

ALLOWED_SCHEMES = {"http", "https", "ssh", "git", "file"}

# user@host:path/to/repo.git
SCP_LIKE_URL = re.compile(r"^[A-Za-z0-9._-]+@[A-Za-z0-9.-]+:[^/].*$")


def validate_repo_url(url: str) -> None:
    """Reject URLs git should not be asked to fetch.

    Raises:
        FetchError: If the URL is not a supported remote or existing local path
    """
    if not url or url.startswith("-"):
        raise FetchError(f"Invalid repository URL: {redact_url(url)!r}")

    if "://" in url:
        scheme = urlsplit(url).scheme.lower()
        if scheme not in ALLOWED_SCHEMES:
            raise FetchError(f"Unsupported repository URL scheme: {scheme!r}")
        return

    if SCP_LIKE_URL.match(url):
        return

    if os.path.isdir(url):
        return

    raise FetchError(f"Invalid repository URL: {redact_url(url)!r}")


class RepositoryFetcher:
    """Clones repositories into build workspaces."""

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = timeout if timeout is not None else settings.clone_timeout_seconds

    async def clone(self, url: str, dest: Path, log: Optional["RunLog"] = None) -> Path:
        """Shallow-clone ``url`` into ``dest``.

        Args:
            url: Repository URL (https, ssh, scp-like or local path)
            dest: Target directory; must not exist yet
            log: Optional per-deployment log handle

        Returns:
            The cloned directory

        Raises:
            FetchError: On invalid URL, existing destination, git failure or timeout
        """
        validate_repo_url(url)
        safe_url = redact_url(url)

        if dest.exists():
            raise FetchError(f"Clone destination already exists: {dest}")
        dest.parent.mkdir(parents=True, exist_ok=True)

        if log is not None:
            await log.info(f"Cloning {safe_url}")
        logger.info("Cloning repository", url=safe_url, dest=str(dest))

        loop = asyncio.get_running_loop()
        try:
            process = Git().clone(
                "--depth=1",
                "--",
                url,
                str(dest),
                as_process=True,
                env={"GIT_TERMINAL_PROMPT": "0"},
            )
        except (GitCommandNotFound, OSError) as e:
            raise FetchError(f"Failed to clone {safe_url}: {redact_url(str(e))}")

        try:
            status, stderr = await asyncio.wait_for(
                loop.run_in_executor(None, self._collect, process),
                timeout=self.timeout,
            )
            if status != 0:
                raise GitCommandError(process.args, status, stderr)
        except asyncio.TimeoutError:
            await self._terminate(process)
            shutil.rmtree(dest, ignore_errors=True)
            raise FetchError(f"Clone of {safe_url} timed out after {self.timeout}s")
        except asyncio.CancelledError:
            await self._terminate(process)
            shutil.rmtree(dest, ignore_errors=True)
            raise
        except GitCommandError as e:
            shutil.rmtree(dest, ignore_errors=True)
            detail = redact_url((e.stderr or str(e)).strip())
            logger.warning("Clone failed", url=safe_url, error=detail)
            raise FetchError(f"Failed to clone {safe_url}: {detail}")

        if log is not None:
            await log.info("Repository cloned")
        return dest

    @staticmethod
    def _collect(process: Git.AutoInterrupt) -> Tuple[int, bytes]:
        """Drain a git process's output and return its exit status and stderr."""
        _, stderr = process.proc.communicate()
        return process.proc.returncode, stderr or b""

    @staticmethod
    async def _terminate(process: Git.AutoInterrupt) -> None:
        """Kill a git process and wait until it has exited."""
        if process.proc.poll() is None:
            process.proc.kill()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, process.proc.wait)
        logger.info("Killed git clone", pid=process.proc.pid)
