"""CommandChannel - executes terminal commands inside session containers."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from berth.concurrency.locks import get_session_lock
from berth.drivers.base import Driver
from berth.errors import SessionNotFoundError, ValidationError
from berth.managers.shell.logical import (
    CwdTrailerFilter,
    is_mutating,
    parse_cd,
    resolve_cd,
    split_chain,
    strip_cwd_trailer,
    wrap_with_cwd_trailer,
)
from berth.models.session import Session, SourceKind
from berth.services import materialize
from berth.services.events import CommandCompleted, FileTreeChanged
from berth.services.projects import read_tree
from berth.utils.process import OutputHandler, ProcessHandle, deliver

if TYPE_CHECKING:
    from berth.managers.recovery import RecoveryController
    from berth.managers.session import SessionManager
    from berth.services.events import EventBus

logger = structlog.get_logger()


@dataclass
class CommandResult:
    """Outcome of one (possibly ``&&``-chained) terminal command."""

    exit_code: int
    stdout: str
    stderr: str
    working_directory: str
    recovered: bool = False
    files_changed: bool = False


class CommandChannel:
    """Runs commands with a tracked working directory and auto-recovery."""

    def __init__(
        self,
        driver: Driver,
        sessions: "SessionManager",
        recovery: "RecoveryController | None" = None,
        events: "EventBus | None" = None,
    ) -> None:
        self._driver = driver
        self._sessions = sessions
        self._recovery = recovery
        self._events = events
        self._active: dict[str, ProcessHandle] = {}
        self._log = logger.bind(manager="shell")

    def is_running(self, terminal_id: str) -> bool:
        handle = self._active.get(terminal_id)
        return handle is not None and handle.running

    async def execute(
        self,
        terminal_id: str,
        command: str,
        *,
        working_directory: str | None = None,
        on_stdout: OutputHandler | None = None,
        on_stderr: OutputHandler | None = None,
    ) -> CommandResult:
        """Execute ``command`` in the terminal's container.

        Segments run in order and stop at the first non-zero exit. A dead
        container is recreated first; the caller sees ``recovered=True``
        rather than an error.

        Raises:
            SessionNotFoundError: If the terminal has no session
        """
        if self._sessions.get(terminal_id) is None:
            raise SessionNotFoundError(terminal_id)

        async with get_session_lock(terminal_id):
            session = self._sessions.get(terminal_id)
            if session is None:
                raise SessionNotFoundError(terminal_id)

            recovered = False
            if not session.container_name or not await self._driver.is_running(session.container_name):
                if self._recovery is None:
                    raise SessionNotFoundError(terminal_id)
                session = await self._recovery.recover(terminal_id, reason="container_dead")
                recovered = True

            cwd = self._starting_directory(session, working_directory)
            self._log.info(
                "shell.execute",
                terminal_id=terminal_id,
                command=command,
                cwd=cwd,
            )

            stdout_parts: list[str] = []
            stderr_parts: list[str] = []
            exit_code = 0
            mutated = False
            home = self._sessions.settings.workspace.mount_path

            try:
                for segment in split_chain(command):
                    cd = parse_cd(segment)
                    if cd is not None:
                        cwd = resolve_cd(cwd, cd.target, home=home)
                        continue

                    exit_code, out, err, reported_cwd = await self._run_segment(
                        session, segment, cwd, on_stdout, on_stderr
                    )
                    stdout_parts.append(out)
                    stderr_parts.append(err)
                    if reported_cwd:
                        cwd = reported_cwd
                    if exit_code == 0 and is_mutating(segment):
                        mutated = True
                    if exit_code != 0:
                        break
            finally:
                self._active.pop(terminal_id, None)

            session.working_directory = cwd
            # False when the session was closed while the command ran
            active = self._sessions.update(session)

        if mutated and active:
            await self._sync_back(session)
            if self._events is not None:
                self._events.emit(
                    FileTreeChanged(terminal_id=terminal_id, project_name=session.project_name)
                )

        self._log.info(
            "shell.completed",
            terminal_id=terminal_id,
            exit_code=exit_code,
            cwd=cwd,
            files_changed=mutated and active,
        )
        if self._events is not None:
            self._events.emit(
                CommandCompleted(
                    terminal_id=terminal_id,
                    command=command,
                    exit_code=exit_code,
                    working_directory=cwd,
                )
            )

        return CommandResult(
            exit_code=exit_code,
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
            working_directory=cwd,
            recovered=recovered,
            files_changed=mutated and active,
        )

    def _starting_directory(self, session: Session, requested: str | None) -> str:
        if not requested:
            return session.working_directory
        if "\x00" in requested:
            raise ValidationError("invalid working_directory", details={"working_directory": requested})
        if requested.startswith("/"):
            return posixpath.normpath(requested)
        return posixpath.normpath(posixpath.join(session.working_directory, requested))

    async def _run_segment(
        self,
        session: Session,
        segment: str,
        cwd: str,
        on_stdout: OutputHandler | None,
        on_stderr: OutputHandler | None,
    ) -> tuple[int, str, str, str | None]:
        trailer = CwdTrailerFilter()

        async def forward_stdout(chunk: str) -> None:
            text = trailer.feed(chunk)
            if text:
                await deliver(on_stdout, text)

        def register(handle: ProcessHandle) -> None:
            self._active[session.terminal_id] = handle

        if not session.container_name:
            raise SessionNotFoundError(session.terminal_id)
        result = await self._driver.exec(
            session.container_name,
            ["sh", "-c", wrap_with_cwd_trailer(segment)],
            workdir=cwd,
            on_stdout=forward_stdout if on_stdout is not None else None,
            on_stderr=on_stderr,
            on_process=register,
        )
        if on_stdout is not None:
            remaining, _ = trailer.flush()
            if remaining:
                await deliver(on_stdout, remaining)

        clean, reported_cwd = strip_cwd_trailer(result.stdout)
        return result.exit_code, clean, result.stderr, reported_cwd

    async def stop(self, terminal_id: str) -> bool:
        """Kill the command currently running for the terminal, if any."""
        handle = self._active.get(terminal_id)
        if handle is None or not handle.running:
            return False
        self._log.info("shell.stop", terminal_id=terminal_id, pid=handle.pid)
        handle.kill()
        return True

    async def _sync_back(self, session: Session) -> None:
        """Push the session's file tree back to the project source (best effort)."""
        projects = self._sessions.projects
        if projects is None:
            return
        try:
            project = await self._sessions.find_project(session.project_name, session.owner_id)
            if project is None:
                return
            if session.source_kind == SourceKind.VOLUME:
                if not session.container_name:
                    return
                files = await materialize.pull_tree(self._driver, session.container_name)
            else:
                files = read_tree(Path(session.source))
            await projects.sync_from_session(project, files)
            self._log.info("shell.synced_back", terminal_id=session.terminal_id, files=len(files))
        except Exception as exc:
            self._log.warning("shell.sync_back_failed", terminal_id=session.terminal_id, error=str(exc))
