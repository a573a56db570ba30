"""Docker driver implementation on top of the docker CLI.

Each operation is one ``docker`` invocation through the process runner, so
the engine works wherever the CLI can reach a daemon (local socket, remote
context, rootless).
"""

from __future__ import annotations

from typing import Callable, Sequence

import structlog

from berth.config import get_settings
from berth.drivers.base import (
    ContainerInfo,
    ContainerSpec,
    ContainerStatus,
    Driver,
)
from berth.errors import ContainerCreateError, ImagePullError, RuntimeUnavailableError
from berth.utils.process import (
    OutputHandler,
    ProcessHandle,
    ProcessResult,
    run_process,
    stream_process,
)

logger = structlog.get_logger()

_STATE_MAP = {
    "running": ContainerStatus.RUNNING,
    "restarting": ContainerStatus.RUNNING,
    "paused": ContainerStatus.RUNNING,
    "created": ContainerStatus.CREATED,
    "exited": ContainerStatus.EXITED,
    "dead": ContainerStatus.EXITED,
    "removing": ContainerStatus.REMOVING,
}


def _is_missing(result: ProcessResult) -> bool:
    return "no such" in result.stderr.lower()


class DockerCliDriver(Driver):
    """Docker driver implementation using the docker CLI."""

    def __init__(self, binary: str | None = None) -> None:
        settings = get_settings()
        self._binary = binary or settings.docker.binary
        self._labels = dict(settings.docker.labels)
        self._stop_timeout = settings.docker.stop_timeout
        self._log = logger.bind(driver="docker")

    async def _docker(self, *args: str, stdin: str | bytes | None = None) -> ProcessResult:
        return await run_process(self._binary, args, stdin=stdin)

    async def ping(self) -> None:
        result = await self._docker("version", "--format", "{{.Server.Version}}")
        if not result.ok:
            self._log.error("docker.ping.failed", stderr=result.stderr.strip())
            raise RuntimeUnavailableError(
                "Docker daemon is not reachable",
                details={"stderr": result.stderr.strip(), "exit_code": result.exit_code},
            )
        self._log.info("docker.ping", server_version=result.stdout.strip())

    # Images

    async def image_exists(self, image: str) -> bool:
        result = await self._docker("image", "inspect", image)
        return result.ok

    async def pull_image(self, image: str, on_output: OutputHandler | None = None) -> None:
        self._log.info("docker.pull", image=image)
        result = await stream_process(
            self._binary,
            ["pull", image],
            on_stdout=on_output,
            on_stderr=on_output,
        )
        if not result.ok:
            self._log.error("docker.pull.failed", image=image, stderr=result.stderr.strip())
            raise ImagePullError(
                f"Failed to pull image {image}",
                image=image,
                stderr=result.stderr.strip(),
            )
        self._log.info("docker.pulled", image=image)

    # Containers

    def _run_args(self, spec: ContainerSpec) -> list[str]:
        args = ["run", "-d", "--name", spec.name]
        if spec.remove_on_exit:
            args.append("--rm")

        labels = dict(self._labels)
        labels.update(spec.labels)
        for key, value in labels.items():
            args += ["--label", f"{key}={value}"]

        for mount in spec.mounts:
            binding = f"{mount.source}:{mount.target}"
            if mount.read_only:
                binding += ":ro"
            args += ["-v", binding]

        if spec.workdir:
            args += ["-w", spec.workdir]

        for port in spec.ports:
            published = f"{port.host_port}:{port.container_port}"
            if port.host_ip:
                published = f"{port.host_ip}:{published}"
            args += ["-p", published]

        if spec.resources is not None:
            args += [
                "--cpus",
                str(spec.resources.cpus),
                "--memory",
                spec.resources.memory,
                "--pids-limit",
                str(spec.resources.pids),
            ]

        if spec.harden:
            args += ["--cap-drop", "ALL", "--security-opt", "no-new-privileges"]

        for key, value in spec.env.items():
            args += ["-e", f"{key}={value}"]

        args.append(spec.image)
        args += spec.command
        return args

    async def run(self, spec: ContainerSpec) -> str:
        self._log.info("docker.run", name=spec.name, image=spec.image)
        result = await self._docker(*self._run_args(spec))
        if not result.ok:
            self._log.error(
                "docker.run.failed",
                name=spec.name,
                exit_code=result.exit_code,
                stderr=result.stderr.strip(),
            )
            raise ContainerCreateError(
                f"Failed to start container {spec.name}",
                container_name=spec.name,
                stderr=result.stderr.strip(),
                stdout=result.stdout.strip(),
            )
        self._log.info("docker.started", name=spec.name, container_id=result.stdout.strip()[:12])
        return spec.name

    async def stop(self, name: str) -> None:
        self._log.info("docker.stop", name=name)
        result = await self._docker("stop", "-t", str(self._stop_timeout), name)
        if result.ok:
            return
        if _is_missing(result):
            self._log.warning("docker.stop.not_found", name=name)
        else:
            self._log.warning("docker.stop.failed", name=name, stderr=result.stderr.strip())

    async def remove(self, name: str) -> None:
        self._log.info("docker.remove", name=name)
        result = await self._docker("rm", "-f", name)
        if result.ok:
            return
        if _is_missing(result):
            self._log.warning("docker.remove.not_found", name=name)
        else:
            self._log.warning("docker.remove.failed", name=name, stderr=result.stderr.strip())

    async def status(self, name: str) -> ContainerInfo:
        """Current state of ``name``.

        Raises:
            RuntimeUnavailableError: If docker cannot list containers
        """
        result = await self._docker(
            "ps",
            "-a",
            "--filter",
            f"name=^{name}$",
            "--format",
            "{{.Names}}\t{{.State}}",
        )
        if not result.ok:
            self._log.error("docker.status.failed", name=name, stderr=result.stderr.strip())
            raise RuntimeUnavailableError(
                "Docker daemon is not reachable",
                details={"stderr": result.stderr.strip(), "exit_code": result.exit_code},
            )
        for line in result.stdout.splitlines():
            found, _, state = line.partition("\t")
            # The name filter is a regex, so confirm the exact match
            if found.strip() == name:
                status = _STATE_MAP.get(state.strip().lower(), ContainerStatus.EXITED)
                return ContainerInfo(name=name, status=status)
        return ContainerInfo(name=name, status=ContainerStatus.NOT_FOUND)

    async def list_names(self, prefix: str) -> list[str]:
        result = await self._docker(
            "ps", "-a", "--filter", f"name={prefix}", "--format", "{{.Names}}"
        )
        if not result.ok:
            self._log.warning("docker.list.failed", prefix=prefix, stderr=result.stderr.strip())
            return []
        names = [line.strip() for line in result.stdout.splitlines()]
        return [n for n in names if n.startswith(prefix)]

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
        args = ["exec"]
        if stdin is not None:
            args.append("-i")
        if workdir:
            args += ["-w", workdir]
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        args.append(name)
        args += list(command)

        return await stream_process(
            self._binary,
            args,
            stdin=stdin,
            timeout=timeout,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            on_process=on_process,
        )

    async def logs(self, name: str, tail: int = 100) -> str:
        result = await self._docker("logs", "--tail", str(tail), name)
        if not result.ok:
            if _is_missing(result):
                return ""
            self._log.warning("docker.logs.failed", name=name, stderr=result.stderr.strip())
            return ""
        return result.stdout + result.stderr

    # Volume management

    async def create_volume(self, name: str, labels: dict[str, str] | None = None) -> str:
        self._log.info("docker.create_volume", name=name)
        volume_labels = dict(self._labels)
        if labels:
            volume_labels.update(labels)
        args = ["volume", "create"]
        for key, value in volume_labels.items():
            args += ["--label", f"{key}={value}"]
        args.append(name)

        result = await self._docker(*args)
        if not result.ok:
            raise ContainerCreateError(
                f"Failed to create volume {name}",
                stderr=result.stderr.strip(),
                stdout=result.stdout.strip(),
            )
        return result.stdout.strip() or name

    async def delete_volume(self, name: str) -> None:
        self._log.info("docker.delete_volume", name=name)
        result = await self._docker("volume", "rm", "-f", name)
        if not result.ok:
            self._log.warning("docker.delete_volume.failed", name=name, stderr=result.stderr.strip())

    async def volume_exists(self, name: str) -> bool:
        result = await self._docker("volume", "inspect", name)
        return result.ok
