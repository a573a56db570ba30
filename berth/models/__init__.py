"""Data models."""

from berth.models.project import FileType, ProjectFile, ProjectRecord, ProjectSource
from berth.models.session import (
    ContainerHandle,
    Session,
    SessionValidation,
    SourceKind,
)

__all__ = [
    "ContainerHandle",
    "FileType",
    "ProjectFile",
    "ProjectRecord",
    "ProjectSource",
    "Session",
    "SessionValidation",
    "SourceKind",
]
