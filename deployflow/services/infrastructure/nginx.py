"""nginx routing service.

Generates one server block per project that proxies
``{subdomain}.{base_domain}`` to the project's container on localhost.
A new rule only becomes active after nginx accepts the whole configuration.
"""
import asyncio
import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Tuple

from deployflow.config import settings
from deployflow.exceptions import ProxyError
from deployflow.services.domain import normalize_subdomain
from deployflow.utils.logging import get_logger

if TYPE_CHECKING:
    from deployflow.services.log_sink import RunLog

logger = get_logger(__name__)

SERVER_TEMPLATE = """# Managed by DeployFlow for {server_name}
server {{
    listen 80;
    listen [::]:80;
    server_name {server_name};

    return 301 https://$host$request_uri;
}}

server {{
    listen 443 ssl;
    listen [::]:443 ssl;
    server_name {server_name};

    ssl_certificate {ssl_certificate};
    ssl_certificate_key {ssl_certificate_key};

    client_max_body_size 25m;

    location / {{
        proxy_pass http://127.0.0.1:{host_port};
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "upgrade";
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_read_timeout 300s;
        proxy_cache_bypass $http_upgrade;
    }}
}}
"""


class NginxService:
    """nginx rule management for server-mode projects."""

    def __init__(
        self,
        sites_dir: Optional[str] = None,
        staging_dir: Optional[str] = None,
        validate_command: Optional[List[str]] = None,
        reload_command: Optional[List[str]] = None,
        base_domain: Optional[str] = None,
        ssl_certificate: Optional[str] = None,
        ssl_certificate_key: Optional[str] = None,
        command_timeout: Optional[float] = None,
    ) -> None:
        """Initialize nginx service.

        Args:
            sites_dir: Directory nginx includes ``*.conf`` from
            staging_dir: Directory rules are rendered into before activation
            validate_command: Command checking the full configuration
            reload_command: Command applying the configuration
            base_domain: Base domain for subdomains
            ssl_certificate: Certificate path used by every rule
            ssl_certificate_key: Key path used by every rule
            command_timeout: Seconds allowed for validate/reload
        """
        self.sites_dir = Path(sites_dir or settings.nginx_sites_dir)
        self.staging_dir = Path(staging_dir or settings.nginx_staging_dir)
        self.validate_command = list(validate_command or settings.nginx_validate_command)
        self.reload_command = list(reload_command or settings.nginx_reload_command)
        self.base_domain = base_domain or settings.base_domain
        self.ssl_certificate = ssl_certificate or settings.ssl_certificate_path
        self.ssl_certificate_key = ssl_certificate_key or settings.ssl_certificate_key_path
        self.command_timeout = command_timeout or settings.nginx_command_timeout_seconds
        self._lock = asyncio.Lock()

    def server_name(self, subdomain: str) -> str:
        return f"{subdomain}.{self.base_domain}"

    def rule_path(self, subdomain: str) -> Path:
        """Active rule file for a subdomain."""
        return self.sites_dir / f"{self._checked(subdomain)}.conf"

    def render(self, subdomain: str, host_port: int) -> str:
        """Render the server blocks for one project."""
        return SERVER_TEMPLATE.format(
            server_name=self.server_name(self._checked(subdomain)),
            ssl_certificate=self.ssl_certificate,
            ssl_certificate_key=self.ssl_certificate_key,
            host_port=int(host_port),
        )

    def read_rule(self, subdomain: str) -> Optional[str]:
        """Text of the active rule, or None if there is none."""
        path = self.rule_path(subdomain)
        if not path.is_file():
            return None
        return path.read_text()

    async def configure(self, subdomain: str, host_port: int, log: Optional["RunLog"] = None) -> None:
        """Route a subdomain to a host port.

        The rule is staged, swapped into the active directory and validated.
        If nginx rejects it the previous rule is restored and nginx is not
        reloaded, so live traffic keeps the old configuration.

        Raises:
            ProxyError: If validation or reload fails
        """
        content = self.render(subdomain, host_port)
        server_name = self.server_name(subdomain)

        self.staging_dir.mkdir(parents=True, exist_ok=True)
        staged = self.staging_dir / f"{subdomain}.conf"
        staged.write_text(content)

        if log is not None:
            await log.info(f"Configuring nginx for {server_name} -> 127.0.0.1:{host_port}")

        async with self._lock:
            active = self.rule_path(subdomain)
            backup = active.read_text() if active.is_file() else None

            self.sites_dir.mkdir(parents=True, exist_ok=True)
            self._install(staged, active)

            code, output = await self._run_command(self.validate_command)
            if code != 0:
                self._restore(active, backup)
                logger.error("nginx rejected configuration", server_name=server_name, output=output)
                raise ProxyError(
                    f"nginx rejected configuration for {server_name}: {output or f'exit code {code}'}",
                    details={"server_name": server_name},
                )

            code, output = await self._run_command(self.reload_command)
            if code != 0:
                logger.error("nginx reload failed", server_name=server_name, output=output)
                raise ProxyError(
                    f"nginx reload failed: {output or f'exit code {code}'}",
                    details={"server_name": server_name},
                )

        logger.info("nginx configured", server_name=server_name, host_port=host_port)
        if log is not None:
            await log.info(f"nginx now routes {server_name}")

    async def remove(self, subdomain: str) -> bool:
        """Remove a subdomain's rule and reload. Best-effort.

        Returns:
            True if a rule existed and nginx reloaded without it
        """
        try:
            active = self.rule_path(subdomain)
        except ProxyError as e:
            logger.warning("Skipping nginx rule removal", error=e.message)
            return False

        async with self._lock:
            if not active.is_file():
                return False
            try:
                backup = active.read_text()
                active.unlink()
            except OSError as e:
                logger.error("Could not remove nginx rule", subdomain=subdomain, error=str(e))
                return False

            code, output = await self._run_command(self.validate_command)
            if code != 0:
                try:
                    self._restore(active, backup)
                except OSError as e:
                    logger.error("Could not restore nginx rule", subdomain=subdomain, error=str(e))
                logger.error("nginx rejected configuration after rule removal", subdomain=subdomain, output=output)
                return False

            code, output = await self._run_command(self.reload_command)
            if code != 0:
                logger.error("nginx reload failed after rule removal", subdomain=subdomain, output=output)
                return False

        try:
            (self.staging_dir / f"{subdomain}.conf").unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove staged nginx rule", subdomain=subdomain, error=str(e))
        logger.info("nginx rule removed", subdomain=subdomain)
        return True

    def _install(self, source: Path, target: Path) -> None:
        """Copy a file into place with an atomic rename."""
        # Hidden .tmp name keeps it out of nginx's *.conf include
        tmp = target.with_name(f".{target.name}.tmp")
        shutil.copyfile(source, tmp)
        os.replace(tmp, target)

    def _restore(self, target: Path, backup: Optional[str]) -> None:
        if backup is None:
            target.unlink(missing_ok=True)
            return
        tmp = target.with_name(f".{target.name}.tmp")
        tmp.write_text(backup)
        os.replace(tmp, target)

    async def _run_command(self, argv: List[str]) -> Tuple[int, str]:
        """Run an nginx control command; returns exit code and merged output."""
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return 127, str(e)

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return -1, f"{' '.join(argv)} timed out after {self.command_timeout}s"

        return process.returncode, stdout.decode("utf-8", errors="replace").strip()

    @staticmethod
    def _checked(subdomain: str) -> str:
        if not subdomain or normalize_subdomain(subdomain) != subdomain:
            raise ProxyError(f"Invalid subdomain for routing: {subdomain!r}")
        return subdomain
