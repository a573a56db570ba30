"""Driver base class - container runtime abstraction.

Driver is responsible ONLY for talking to the container runtime.
It does NOT handle:
- Naming policy and collision handling
- Session bookkeeping
- Recovery

Everything above the driver speaks in structured requests so the CLI
implementation can be swapped for a native API client.
"""

from __future__ import annotations

import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Sequence

from berth.utils.process import OutputHandler, ProcessHandle, ProcessResult

if TYPE_CHECKING:
    from berth.config import ResourceSpec


class ContainerStatus(str, Enum):
    """Container status from driver's perspective."""

    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    REMOVING = "removing"
    NOT_FOUND = "not_found"


@dataclass
class ContainerInfo:
    """Container information from driver."""

    name: str
    status: ContainerStatus


@dataclass
class Mount:
    """Bind mount (host path) or named volume mount."""

    source: str
    target: str
    read_only: bool = False
    volume: bool = False


@dataclass
class PortBinding:
    host_port: int
    container_port: int
    host_ip: str | None = None


@dataclass
class ContainerSpec:
    """Everything needed to create and start one container."""

    name: str
    image: str
    command: list[str] = field(default_factory=lambda: ["sleep", "infinity"])
    mounts: list[Mount] = field(default_factory=list)
    ports: list[PortBinding] = field(default_factory=list)
    workdir: str | None = None
    resources: "ResourceSpec | None" = None
    labels: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    # Drop all capabilities and forbid privilege escalation
    harden: bool = False
    remove_on_exit: bool = False


class Driver(ABC):
    """Abstract driver interface for the container runtime.

    Every container created through a driver carries ``berth.managed=true``
    plus any caller labels.
    """

    @abstractmethod
    async def ping(self) -> None:
        """Check the runtime is reachable.

        Raises:
            RuntimeUnavailableError: If the daemon cannot be reached
        """
        ...

    # Images

    @abstractmethod
    async def image_exists(self, image: str) -> bool:
        ...

    @abstractmethod
    async def pull_image(self, image: str, on_output: OutputHandler | None = None) -> None:
        """Pull an image, streaming progress to ``on_output``.

        Raises:
            ImagePullError: If the pull fails (not retried)
        """
        ...

    # Containers

    @abstractmethod
    async def run(self, spec: ContainerSpec) -> str:
        """Create and start a container.

        Returns:
            The container name

        Raises:
            ContainerCreateError: With the runtime's stderr/stdout
        """
        ...

    @abstractmethod
    async def stop(self, name: str) -> None:
        """Stop a container; missing containers are ignored."""
        ...

    @abstractmethod
    async def remove(self, name: str) -> None:
        """Force-remove a container; missing containers are ignored."""
        ...

    @abstractmethod
    async def status(self, name: str) -> ContainerInfo:
        ...

    @abstractmethod
    async def list_names(self, prefix: str) -> list[str]:
        """Names of containers in any state whose name starts with ``prefix``."""
        ...

    @abstractmethod
    async def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        workdir: str | None = None,
        stdin: str | bytes | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        on_stdout: OutputHandler | None = None,
        on_stderr: OutputHandler | None = None,
        on_process: Callable[[ProcessHandle], None] | None = None,
    ) -> ProcessResult:
        """Run a command inside a running container.

        A non-zero exit code is returned, never raised.
        """
        ...

    @abstractmethod
    async def logs(self, name: str, tail: int = 100) -> str:
        ...

    # Volume management

    @abstractmethod
    async def create_volume(self, name: str, labels: dict[str, str] | None = None) -> str:
        ...

    @abstractmethod
    async def delete_volume(self, name: str) -> None:
        ...

    @abstractmethod
    async def volume_exists(self, name: str) -> bool:
        ...

    # Helpers built on the primitives above

    async def is_running(self, name: str) -> bool:
        info = await self.status(name)
        return info.status == ContainerStatus.RUNNING

    async def exists(self, name: str) -> bool:
        info = await self.status(name)
        return info.status != ContainerStatus.NOT_FOUND

    async def stop_and_remove(self, name: str) -> None:
        await self.stop(name)
        await self.remove(name)

    async def write_file(self, name: str, path: str, content: str | bytes) -> ProcessResult:
        """Write ``content`` to ``path`` inside the container, creating parents."""
        quoted = shlex.quote(path)
        script = f"mkdir -p \"$(dirname {quoted})\" && cat > {quoted}"
        return await self.exec(name, ["sh", "-c", script], stdin=content)

    async def make_dir(self, name: str, path: str) -> ProcessResult:
        return await self.exec(name, ["mkdir", "-p", path])
