"""Berth error hierarchy.

Every error carries a stable ``code``, a human readable ``message`` and a
``details`` dict. The engine facade converts them into structured failures
so they never cross the transport boundary as exceptions.
"""

from __future__ import annotations

from typing import Any


class BerthError(Exception):
    """Base class for all engine errors."""

    code: str = "internal_error"

    def __init__(
        self,
        message: str = "Internal error",
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class RuntimeUnavailableError(BerthError):
    """The container runtime daemon is unreachable."""

    code = "runtime_unavailable"


class ImagePullError(BerthError):
    """An image could not be pulled. Callers may retry."""

    code = "image_pull_failed"

    def __init__(self, message: str, *, image: str, stderr: str = "") -> None:
        super().__init__(message, details={"image": image, "stderr": stderr})
        self.image = image


class ContainerCreateError(BerthError):
    """The runtime refused to create/start a container."""

    code = "container_create_failed"

    def __init__(
        self,
        message: str,
        *,
        container_name: str | None = None,
        stderr: str = "",
        stdout: str = "",
    ) -> None:
        super().__init__(
            message,
            details={
                "container_name": container_name,
                "stderr": stderr,
                "stdout": stdout,
            },
        )
        self.container_name = container_name


class PortInUseError(BerthError):
    """The fixed web port is held by something outside our control."""

    code = "port_in_use"

    def __init__(self, port: int) -> None:
        super().__init__(f"Port {port} is already in use", details={"port": port})
        self.port = port


class NotFoundError(BerthError):
    code = "not_found"


class SessionNotFoundError(NotFoundError):
    code = "session_not_found"

    def __init__(self, terminal_id: str) -> None:
        super().__init__(
            f"No session for terminal {terminal_id}",
            details={"terminal_id": terminal_id},
        )
        self.terminal_id = terminal_id


class ProjectNotFoundError(NotFoundError):
    code = "project_not_found"


class ValidationError(BerthError):
    """Invalid caller input."""

    code = "validation_error"
