"""SessionStore - the in-memory session registry.

Owns both indices (terminal id -> session, container name -> terminal id)
and keeps them in step; callers never touch either map directly.
"""

from __future__ import annotations

from typing import Callable, Iterator

import structlog

from berth.db.snapshot import SnapshotData, SnapshotFile
from berth.models.session import Session

logger = structlog.get_logger()


class SessionStore:
    """Two-index session registry persisted through a snapshot file."""

    def __init__(self, snapshot: SnapshotFile | None = None) -> None:
        self._sessions: dict[str, Session] = {}
        self._containers: dict[str, str] = {}
        self._snapshot = snapshot
        self._log = logger.bind(component="session_store")

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, terminal_id: object) -> bool:
        return terminal_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def get(self, terminal_id: str) -> Session | None:
        return self._sessions.get(terminal_id)

    def by_container(self, container_name: str) -> Session | None:
        terminal_id = self._containers.get(container_name)
        if terminal_id is None:
            return None
        return self._sessions.get(terminal_id)

    def terminal_for_container(self, container_name: str) -> str | None:
        return self._containers.get(container_name)

    def for_owner(self, owner_id: str) -> list[Session]:
        return [s for s in self._sessions.values() if s.owner_id == owner_id]

    def for_project(self, project_name: str) -> list[Session]:
        return [s for s in self._sessions.values() if s.project_name == project_name]

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    def container_index(self) -> dict[str, str]:
        return dict(self._containers)

    def put(self, session: Session, *, persist: bool = True) -> None:
        """Insert or replace a session, re-pointing its container entry."""
        self._drop_container_entries(session.terminal_id)
        self._sessions[session.terminal_id] = session
        if session.container_name:
            self._containers[session.container_name] = session.terminal_id
        if persist:
            self.persist()

    def remove(self, terminal_id: str, *, persist: bool = True) -> Session | None:
        session = self._sessions.pop(terminal_id, None)
        self._drop_container_entries(terminal_id)
        if session is not None and persist:
            self.persist()
        return session

    def _drop_container_entries(self, terminal_id: str) -> None:
        stale = [name for name, tid in self._containers.items() if tid == terminal_id]
        for name in stale:
            del self._containers[name]

    def persist(self) -> None:
        if self._snapshot is None:
            return
        try:
            self._snapshot.save(self._sessions, self._containers)
        except OSError as exc:
            self._log.error("session_store.persist_failed", error=str(exc))

    def read_snapshot(self) -> SnapshotData:
        if self._snapshot is None:
            return SnapshotData()
        return self._snapshot.load()

    def load(self, data: SnapshotData, keep: Callable[[Session], bool] | None = None) -> list[Session]:
        """Adopt snapshot sessions accepted by ``keep``; returns the dropped ones."""
        dropped: list[Session] = []
        for terminal_id, session in data.sessions.items():
            if keep is not None and not keep(session):
                dropped.append(session)
                continue
            self._sessions[terminal_id] = session
        for name, terminal_id in data.containers.items():
            if terminal_id in self._sessions:
                self._containers[name] = terminal_id
        return dropped

    def clear(self) -> None:
        self._sessions.clear()
        self._containers.clear()
