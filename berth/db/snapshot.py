"""Session snapshot persistence.

The whole registry is written as one JSON document after every mutating
session operation and read once at startup:

    {
      "saved_at": "<iso-8601>",
      "sessions": [[terminal_id, {...session record...}], ...],
      "containers": [[container_name, terminal_id], ...]
    }

Writes go to a sibling temp file that is then renamed over the target, so a
crash never leaves a truncated snapshot behind.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from berth.models.session import Session
from berth.utils.datetime import utcnow

logger = structlog.get_logger()


@dataclass
class SnapshotData:
    sessions: dict[str, Session] = field(default_factory=dict)
    containers: dict[str, str] = field(default_factory=dict)


class SnapshotFile:
    """Atomic JSON snapshot of the session registry."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._log = logger.bind(component="snapshot")

    @property
    def path(self) -> Path:
        return self._path

    def save(self, sessions: dict[str, Session], containers: dict[str, str]) -> None:
        payload = {
            "saved_at": utcnow().isoformat(),
            "sessions": [
                [terminal_id, session.model_dump(mode="json")]
                for terminal_id, session in sessions.items()
            ],
            "containers": [[name, terminal_id] for name, terminal_id in containers.items()],
        }

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self._path.name}.",
            suffix=".tmp",
            dir=self._path.parent,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

        self._log.debug("snapshot.saved", path=str(self._path), sessions=len(sessions))

    def load(self) -> SnapshotData:
        """Read the snapshot; a missing or corrupt file yields empty data."""
        if not self._path.exists():
            return SnapshotData()

        try:
            with open(self._path, encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as exc:
            self._log.warning("snapshot.unreadable", path=str(self._path), error=str(exc))
            return SnapshotData()
        if not isinstance(payload, dict):
            self._log.warning(
                "snapshot.unreadable",
                path=str(self._path),
                error=f"expected an object, got {type(payload).__name__}",
            )
            return SnapshotData()

        data = SnapshotData()
        for entry in _entries(payload, "sessions"):
            try:
                terminal_id, record = entry
                data.sessions[terminal_id] = Session.model_validate(record)
            except (TypeError, ValueError) as exc:
                self._log.warning("snapshot.bad_session", error=str(exc))
        for entry in _entries(payload, "containers"):
            try:
                name, terminal_id = entry
            except (TypeError, ValueError):
                continue
            data.containers[name] = terminal_id

        self._log.info(
            "snapshot.loaded",
            path=str(self._path),
            sessions=len(data.sessions),
            containers=len(data.containers),
        )
        return data


def _entries(payload: dict, key: str) -> list:
    value = payload.get(key)
    return value if isinstance(value, list) else []
