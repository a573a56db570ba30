"""Project source implementations.

``InMemoryProjectSource`` backs tests and embedders that already hold the
project tree; ``DirectoryProjectSource`` reads ``<root>/<owner>/<project>``.
"""

from __future__ import annotations

from pathlib import Path

import structlog

from berth.models.project import FileType, ProjectFile, ProjectRecord

logger = structlog.get_logger()


class InMemoryProjectSource:
    """Project store held in process memory."""

    def __init__(self) -> None:
        self._projects: dict[str, ProjectRecord] = {}
        self._files: dict[str, dict[str, ProjectFile]] = {}
        self.synced: dict[str, list[ProjectFile]] = {}

    def add_project(
        self,
        name: str,
        owner_id: str,
        files: dict[str, str | None] | None = None,
    ) -> ProjectRecord:
        """Register a project. A ``None`` file value marks a folder."""
        record = ProjectRecord(id=f"{owner_id}/{name}", name=name, owner_id=owner_id)
        self._projects[record.id] = record
        self._files[record.id] = {}
        for path, content in (files or {}).items():
            self.put_file(record, path, content)
        return record

    def put_file(self, project: ProjectRecord, path: str, content: str | None) -> ProjectFile:
        if content is None:
            entry = ProjectFile(path=path, type=FileType.FOLDER)
        else:
            entry = ProjectFile(path=path, content=content)
        self._files[project.id][path] = entry
        return entry

    async def find_project(self, name: str, owner_id: str | None) -> ProjectRecord | None:
        for record in self._projects.values():
            if record.name != name:
                continue
            if owner_id is None or record.owner_id == owner_id:
                return record
        return None

    async def list_files(self, project: ProjectRecord) -> list[ProjectFile]:
        return list(self._files.get(project.id, {}).values())

    async def get_file(self, project: ProjectRecord, path: str) -> ProjectFile | None:
        return self._files.get(project.id, {}).get(path)

    async def sync_from_session(self, project: ProjectRecord, files: list[ProjectFile]) -> None:
        self.synced[project.id] = files
        self._files[project.id] = {f.path: f for f in files}


class DirectoryProjectSource:
    """Projects stored on disk as ``<root>/<owner>/<project>``."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._log = logger.bind(source="directory")

    def _project_dir(self, project: ProjectRecord) -> Path:
        return self._root / project.owner_id / project.name

    async def find_project(self, name: str, owner_id: str | None) -> ProjectRecord | None:
        if owner_id is not None:
            candidates = [self._root / owner_id / name]
        else:
            candidates = sorted(self._root.glob(f"*/{name}"))
        for path in candidates:
            if path.is_dir():
                owner = path.parent.name
                return ProjectRecord(id=f"{owner}/{name}", name=name, owner_id=owner)
        return None

    async def list_files(self, project: ProjectRecord) -> list[ProjectFile]:
        return read_tree(self._project_dir(project))

    async def get_file(self, project: ProjectRecord, path: str) -> ProjectFile | None:
        target = self._project_dir(project) / path
        if target.is_dir():
            return ProjectFile(path=path, type=FileType.FOLDER)
        if not target.is_file():
            return None
        return ProjectFile(path=path, content=target.read_text(encoding="utf-8", errors="replace"))

    async def sync_from_session(self, project: ProjectRecord, files: list[ProjectFile]) -> None:
        # Sessions opened from this source write straight into its directory
        self._log.debug("projects.sync_skipped", project=project.id, files=len(files))


def read_tree(directory: Path, *, max_file_bytes: int = 1024 * 1024) -> list[ProjectFile]:
    """Read a directory into project file records (oversized files skipped)."""
    entries: list[ProjectFile] = []
    if not directory.is_dir():
        return entries
    for path in sorted(directory.rglob("*")):
        rel = path.relative_to(directory).as_posix()
        if path.is_dir():
            entries.append(ProjectFile(path=rel, type=FileType.FOLDER))
        elif path.is_file():
            if path.stat().st_size > max_file_bytes:
                logger.debug("projects.read_tree.skip_large", path=rel)
                continue
            entries.append(
                ProjectFile(path=rel, content=path.read_text(encoding="utf-8", errors="replace"))
            )
    return entries
