"""Project/file records consumed from the external project store."""

from __future__ import annotations

from enum import Enum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel


class FileType(str, Enum):
    FILE = "file"
    FOLDER = "folder"


class ProjectRecord(BaseModel):
    id: str
    name: str
    owner_id: str


class ProjectFile(BaseModel):
    """One file or folder of a project, path relative to the project root."""

    path: str
    type: FileType = FileType.FILE
    content: str = ""

    @property
    def is_folder(self) -> bool:
        return self.type == FileType.FOLDER

    @property
    def size(self) -> int:
        return len(self.content.encode("utf-8"))


@runtime_checkable
class ProjectSource(Protocol):
    """File-materialization source (the project/file data store)."""

    async def find_project(self, name: str, owner_id: str | None) -> ProjectRecord | None:
        """Find a project by name; ``owner_id=None`` matches any owner."""
        ...

    async def list_files(self, project: ProjectRecord) -> list[ProjectFile]:
        ...

    async def get_file(self, project: ProjectRecord, path: str) -> ProjectFile | None:
        ...

    async def sync_from_session(self, project: ProjectRecord, files: list[ProjectFile]) -> None:
        """Receive the file tree read back from a session after it changed."""
        ...
