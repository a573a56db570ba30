"""Session data model.

Session represents one terminal's live container.
- 1 terminal id = at most 1 Session
- Replaced in place (same terminal id, new container) by recovery
- Persisted in the engine snapshot so restarts can re-adopt containers
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from berth.utils.datetime import utcnow

WORKSPACE_DIR = "/workspace"


class SourceKind(str, Enum):
    """How project content reaches the container."""

    BIND = "bind"  # host directory (temp dir or projects root) bind-mounted
    VOLUME = "volume"  # named runtime volume


class Session(BaseModel):
    """Session - a terminal's container and its web preview."""

    terminal_id: str
    owner_id: str
    project_name: str

    # Workspace source
    source: str
    source_kind: SourceKind = SourceKind.BIND
    temp_dir: str | None = None

    # Primary container
    image: str
    container_name: str | None = None
    port: int | None = None
    working_directory: str = WORKSPACE_DIR

    # Web preview
    web_container_name: str | None = None
    web_port: int | None = None
    web_config_path: str | None = None

    created_at: datetime = Field(default_factory=utcnow)

    # Runtime flags
    recovering: bool = False
    auto_restart_pending: bool = False

    @property
    def has_web_server(self) -> bool:
        return self.web_container_name is not None

    @property
    def is_temp_backed(self) -> bool:
        return self.temp_dir is not None

    def handle(self) -> ContainerHandle | None:
        if self.container_name is None:
            return None
        return ContainerHandle(name=self.container_name, image=self.image)


class ContainerHandle(BaseModel):
    """Name and image of a session's primary container."""

    name: str
    image: str


class SessionValidation(BaseModel):
    """Result of ``SessionManager.validate``."""

    terminal_id: str
    known: bool
    running: bool
    reason: str
    container_name: str | None = None
