"""Host port allocation for server-mode containers."""
import asyncio
from typing import Any, Dict, Optional, Set

from deployflow.config import settings
from deployflow.exceptions import ContainerError
from deployflow.utils.logging import get_logger

logger = get_logger(__name__)

PORT_LABEL = "deployflow.port"


def host_ports_of(attrs: Dict[str, Any], labels: Dict[str, str]) -> Set[int]:
    """Every host port a container claims, running or stopped."""
    ports: Set[int] = set()

    label = (labels or {}).get(PORT_LABEL, "")
    if label.isdigit():
        ports.add(int(label))

    binding_maps = [
        (attrs.get("HostConfig") or {}).get("PortBindings") or {},
        (attrs.get("NetworkSettings") or {}).get("Ports") or {},
    ]
    for bindings in binding_maps:
        for entries in bindings.values():
            for entry in entries or []:
                host_port = str(entry.get("HostPort") or "")
                if host_port.isdigit():
                    ports.add(int(host_port))
    return ports


class PortAllocator:
    """Hands out host ports from a fixed range, one caller at a time.

    Candidates advance monotonically and wrap to the start of the range.
    Each allocation re-scans the container runtime so ports held by
    containers from earlier processes are skipped too.
    """

    def __init__(self, client: Any, start: Optional[int] = None, end: Optional[int] = None) -> None:
        self.client = client
        self.start = start if start is not None else settings.port_range_start
        self.end = end if end is not None else settings.port_range_end
        if self.start > self.end:
            raise ValueError(f"Empty port range {self.start}-{self.end}")
        self._next = self.start
        self._reserved: Set[int] = set()
        self._lock = asyncio.Lock()

    async def allocate(self) -> int:
        """Reserve a free host port.

        Raises:
            ContainerError: If every port in the range is taken
        """
        async with self._lock:
            loop = asyncio.get_running_loop()
            in_use = await loop.run_in_executor(None, self._scan_ports_in_use)

            for _ in range(self.end - self.start + 1):
                candidate = self._next
                self._next = self.start if candidate >= self.end else candidate + 1
                if candidate in in_use or candidate in self._reserved:
                    continue
                self._reserved.add(candidate)
                logger.debug("Allocated host port", port=candidate)
                return candidate

        raise ContainerError(f"No free host port in range {self.start}-{self.end}")

    def release(self, port: Optional[int]) -> None:
        """Return a port handed out by :meth:`allocate`."""
        if port is not None:
            self._reserved.discard(port)

    def _scan_ports_in_use(self) -> Set[int]:
        used: Set[int] = set()
        for container in self.client.containers.list(all=True):
            used |= host_ports_of(container.attrs or {}, container.labels or {})
        return used
