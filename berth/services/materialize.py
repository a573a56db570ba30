"""Moving project trees between the project source and session workspaces."""

from __future__ import annotations

import fnmatch
import posixpath
import shlex
from pathlib import Path
from typing import Iterable

import structlog

from berth.config import ImageConfig
from berth.drivers.base import Driver
from berth.errors import BerthError, ValidationError
from berth.models.project import FileType, ProjectFile
from berth.models.session import WORKSPACE_DIR
from berth.validators import validate_relative_path

logger = structlog.get_logger()

PLACEHOLDER_INDEX = """<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"><title>{project}</title></head>
  <body>
    <h1>{project}</h1>
    <p>This workspace is empty. Add files to get started.</p>
  </body>
</html>
"""


def detect_image(paths: Iterable[str], images: ImageConfig) -> str:
    """Pick a runtime image from the project's file names.

    Markers are checked in configuration order; the first one matching any
    file's base name wins.
    """
    names = {posixpath.basename(p) for p in paths}
    for marker, image in images.by_marker.items():
        if any(fnmatch.fnmatchcase(name, marker) for name in names):
            return image
    return images.default


def safe_files(files: Iterable[ProjectFile]) -> list[ProjectFile]:
    """Drop entries whose path is absolute or escapes the project root."""
    safe: list[ProjectFile] = []
    for entry in files:
        try:
            path = validate_relative_path(entry.path)
        except ValidationError:
            logger.warning("materialize.unsafe_path", path=entry.path)
            continue
        safe.append(entry.model_copy(update={"path": path}))
    return safe


def write_tree(directory: Path, files: Iterable[ProjectFile]) -> int:
    """Write project files under ``directory``; returns the number of files."""
    written = 0
    for entry in safe_files(files):
        target = directory / entry.path
        if entry.type == FileType.FOLDER:
            target.mkdir(parents=True, exist_ok=True)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(entry.content, encoding="utf-8")
        written += 1
    return written


def seed_placeholder(directory: Path, project_name: str) -> bool:
    """Create ``directory`` and a placeholder index.html if it is empty."""
    directory.mkdir(parents=True, exist_ok=True)
    if any(directory.iterdir()):
        return False
    (directory / "index.html").write_text(
        PLACEHOLDER_INDEX.format(project=project_name), encoding="utf-8"
    )
    return True


async def push_tree(
    driver: Driver,
    container_name: str,
    files: Iterable[ProjectFile],
    *,
    root: str = WORKSPACE_DIR,
) -> int:
    """Copy project files into a running container (volume-backed sessions)."""
    written = 0
    for entry in safe_files(files):
        target = posixpath.join(root, entry.path)
        if entry.type == FileType.FOLDER:
            await driver.make_dir(container_name, target)
            continue
        result = await driver.write_file(container_name, target, entry.content)
        if not result.ok:
            raise BerthError(
                f"Failed to write {entry.path} into {container_name}",
                details={"path": entry.path, "stderr": result.stderr.strip()},
            )
        written += 1
    return written


async def pull_tree(
    driver: Driver,
    container_name: str,
    *,
    root: str = WORKSPACE_DIR,
) -> list[ProjectFile]:
    """Read the workspace tree back out of a running container."""
    entries: list[ProjectFile] = []
    quoted = shlex.quote(root)

    dirs = await driver.exec(container_name, ["sh", "-c", f"cd {quoted} && find . -mindepth 1 -type d"])
    for line in dirs.stdout.splitlines() if dirs.ok else []:
        rel = line.strip().removeprefix("./")
        if rel:
            entries.append(ProjectFile(path=rel, type=FileType.FOLDER))

    listing = await driver.exec(container_name, ["sh", "-c", f"cd {quoted} && find . -type f"])
    for line in listing.stdout.splitlines() if listing.ok else []:
        rel = line.strip().removeprefix("./")
        if not rel:
            continue
        content = await driver.exec(container_name, ["cat", posixpath.join(root, rel)])
        if content.ok:
            entries.append(ProjectFile(path=rel, content=content.stdout))
    return entries
