"""RecoveryController - replaces dead containers and syncs edited files.

Two paths re-enter the session manager:
- recover: the terminal's container disappeared; a new one is created under
  the same terminal id and the web preview follows it
- sync_file: a project file changed in the store; temp-dir workspaces get
  the new content and their preview is recreated
"""

from __future__ import annotations

import posixpath
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from berth.concurrency.locks import WEB_SCOPE, get_session_lock
from berth.errors import SessionNotFoundError
from berth.models.session import Session, SourceKind
from berth.services.events import ContainerRestarted, FileTreeChanged, RecoveryOccurred
from berth.validators import validate_relative_path

if TYPE_CHECKING:
    from berth.drivers.base import Driver
    from berth.managers.session import SessionManager
    from berth.managers.web import WebServerProvisioner
    from berth.services.events import EventBus

logger = structlog.get_logger()


class RecoveryController:
    """Auto-recovery and file sync for live sessions."""

    def __init__(
        self,
        driver: "Driver",
        sessions: "SessionManager",
        web: "WebServerProvisioner",
        events: "EventBus | None" = None,
    ) -> None:
        self._driver = driver
        self._sessions = sessions
        self._web = web
        self._events = events
        # Terminals that received files while their preview was restarting
        self._restart_again: set[str] = set()
        self._log = logger.bind(manager="recovery")

    async def recover(self, terminal_id: str, *, reason: str = "container_dead") -> Session:
        """Recreate a terminal's container under the same terminal id.

        The caller must hold the terminal's command lock.

        Raises:
            SessionNotFoundError: If the terminal has no session
            ContainerCreateError: If the replacement cannot be started
        """
        stale = self._sessions.get(terminal_id)
        if stale is None:
            raise SessionNotFoundError(terminal_id)

        had_web = stale.has_web_server
        old_container = stale.container_name
        self._log.warning(
            "recovery.start",
            terminal_id=terminal_id,
            container=old_container,
            reason=reason,
        )

        stale.recovering = True
        self._sessions.update(stale)

        await self._sessions.close(terminal_id, teardown=False)
        session = await self._sessions.open(terminal_id, stale.project_name, stale.owner_id)
        session.working_directory = stale.working_directory
        self._sessions.update(session)

        if had_web:
            async with get_session_lock(terminal_id, WEB_SCOPE):
                result = await self._web.provision(session)
            if not result.success:
                self._log.warning(
                    "recovery.web_restart_failed",
                    terminal_id=terminal_id,
                    error=result.error,
                    detail=result.detail,
                )

        self._log.info(
            "recovery.complete",
            terminal_id=terminal_id,
            old_container=old_container,
            new_container=session.container_name,
        )
        if self._events is not None:
            self._events.emit(
                ContainerRestarted(
                    terminal_id=terminal_id,
                    old_container_name=old_container,
                    new_container_name=session.container_name,
                )
            )
            self._events.emit(RecoveryOccurred(terminal_id=terminal_id, reason=reason))

        return self._sessions.get(terminal_id) or session

    async def sync_file(self, project_name: str, file_path: str) -> list[str]:
        """Push one changed project file into every live session of the project.

        Returns:
            Terminal ids whose workspace received the file
        """
        rel_path = validate_relative_path(file_path)
        synced: list[str] = []

        for session in self._sessions.store.for_project(project_name):
            if session.source_kind == SourceKind.BIND and not session.is_temp_backed:
                # Bound straight to the project directory; nothing to copy
                continue
            if await self._sync_session(session, rel_path):
                synced.append(session.terminal_id)

        if synced and self._events is not None:
            for terminal_id in synced:
                self._events.emit(
                    FileTreeChanged(
                        terminal_id=terminal_id,
                        project_name=project_name,
                        paths=[rel_path],
                    )
                )
        return synced

    async def _sync_session(self, session: Session, rel_path: str) -> bool:
        projects = self._sessions.projects
        if projects is None:
            return False
        project = await self._sessions.find_project(session.project_name, session.owner_id)
        if project is None:
            return False
        entry = await projects.get_file(project, rel_path)
        if entry is None:
            self._log.warning("recovery.sync.file_missing", project=project.id, path=rel_path)
            return False

        if session.source_kind == SourceKind.VOLUME:
            if not session.container_name:
                return False
            target = posixpath.join(self._sessions.settings.workspace.mount_path, rel_path)
            if entry.is_folder:
                await self._driver.make_dir(session.container_name, target)
            else:
                result = await self._driver.write_file(session.container_name, target, entry.content)
                if not result.ok:
                    self._log.warning(
                        "recovery.sync.write_failed",
                        terminal_id=session.terminal_id,
                        path=rel_path,
                        stderr=result.stderr.strip(),
                    )
                    return False
            verified = True
        else:
            target_path = Path(session.source) / rel_path
            if entry.is_folder:
                target_path.mkdir(parents=True, exist_ok=True)
                verified = True
            else:
                target_path.parent.mkdir(parents=True, exist_ok=True)
                target_path.write_text(entry.content, encoding="utf-8")
                verified = self._verify(session, target_path, entry.size)

        self._log.info(
            "recovery.sync.file_written",
            terminal_id=session.terminal_id,
            path=rel_path,
            verified=verified,
        )
        if verified and session.has_web_server:
            await self._restart_web(session)
        return True

    def _verify(self, session: Session, path: Path, expected: int) -> bool:
        actual = path.stat().st_size
        if actual != expected:
            self._log.warning(
                "recovery.sync.size_mismatch",
                terminal_id=session.terminal_id,
                path=str(path),
                expected=expected,
                actual=actual,
            )
            return False
        return True

    async def _restart_web(self, session: Session) -> None:
        """Recreate the preview once per burst of file changes.

        Changes that land while a restart is in flight only mark the terminal;
        the running restart then goes round once more to pick them up.
        """
        terminal_id = session.terminal_id
        if session.auto_restart_pending:
            self._restart_again.add(terminal_id)
            self._log.info("recovery.sync.restart_deferred", terminal_id=terminal_id)
            return

        session.auto_restart_pending = True
        self._sessions.update(session)
        try:
            while True:
                self._restart_again.discard(terminal_id)
                async with get_session_lock(terminal_id, WEB_SCOPE):
                    current = self._sessions.get(terminal_id)
                    if current is None or not current.has_web_server:
                        return
                    result = await self._web.provision(current)
                if not result.success:
                    self._log.warning(
                        "recovery.sync.web_restart_failed",
                        terminal_id=terminal_id,
                        error=result.error,
                    )
                    return
                if terminal_id not in self._restart_again:
                    return
        finally:
            self._restart_again.discard(terminal_id)
            current = self._sessions.get(terminal_id)
            if current is not None:
                current.auto_restart_pending = False
                self._sessions.update(current)
