"""Engine - the transport-facing facade.

Every operation returns an ``OperationResult``; engine errors are turned into
``{"code", "message", "details"}`` and never cross this boundary as
exceptions.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Sequence

import structlog

from berth.config import Settings, get_settings
from berth.db.snapshot import SnapshotFile
from berth.errors import BerthError, PortInUseError, SessionNotFoundError
from berth.managers.recovery import RecoveryController
from berth.managers.session import SessionManager, SessionStore
from berth.managers.shell import CommandChannel
from berth.managers.web import WebErrorCode, WebServerProvisioner
from berth.services.events import EventBus
from berth.services.runner import FileRunner
from berth.utils.process import OutputHandler

if TYPE_CHECKING:
    from berth.drivers.base import Driver
    from berth.models.project import ProjectSource
    from berth.services.warm_pool import WarmPool

logger = structlog.get_logger()


@dataclass
class OperationResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: dict[str, Any] | None = None

    @classmethod
    def ok(cls, **data: Any) -> OperationResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: BerthError) -> OperationResult:
        return cls(success=False, error=error.to_dict())


class Engine:
    """Wires the managers together and exposes the session API."""

    def __init__(
        self,
        driver: "Driver",
        projects: "ProjectSource | None" = None,
        *,
        settings: Settings | None = None,
        events: EventBus | None = None,
        pool: "WarmPool | None" = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.driver = driver
        self.events = events or EventBus()
        self.store = SessionStore(SnapshotFile(self.settings.state.snapshot_path))
        self.sessions = SessionManager(driver, self.store, projects, self.events, self.settings)
        self.web = WebServerProvisioner(driver, self.sessions, self.events)
        self.recovery = RecoveryController(driver, self.sessions, self.web, self.events)
        self.shell = CommandChannel(driver, self.sessions, self.recovery, self.events)
        self.runner = FileRunner(driver, self.sessions, pool)
        self._log = logger.bind(component="engine")

    async def _guard(self, operation: str, call: Callable[[], Awaitable[OperationResult]]) -> OperationResult:
        try:
            return await call()
        except BerthError as exc:
            self._log.warning(f"engine.{operation}.failed", code=exc.code, error=exc.message)
            return OperationResult.fail(exc)
        except Exception as exc:
            self._log.exception(f"engine.{operation}.error", error=str(exc))
            return OperationResult.fail(BerthError(str(exc) or type(exc).__name__))

    async def open_session(
        self,
        terminal_id: str,
        project_name: str,
        owner_id: str,
        *,
        on_output: OutputHandler | None = None,
    ) -> OperationResult:
        async def call() -> OperationResult:
            session = await self.sessions.open(
                terminal_id, project_name, owner_id, on_output=on_output
            )
            return OperationResult.ok(
                terminal_id=session.terminal_id,
                project_name=session.project_name,
                container_name=session.container_name,
                image=session.image,
                port=session.port,
                working_directory=session.working_directory,
            )

        return await self._guard("open_session", call)

    async def execute_command(
        self,
        terminal_id: str,
        command: str,
        *,
        working_directory: str | None = None,
        on_stdout: OutputHandler | None = None,
        on_stderr: OutputHandler | None = None,
    ) -> OperationResult:
        async def call() -> OperationResult:
            result = await self.shell.execute(
                terminal_id,
                command,
                working_directory=working_directory,
                on_stdout=on_stdout,
                on_stderr=on_stderr,
            )
            return OperationResult.ok(**asdict(result))

        return await self._guard("execute_command", call)

    async def stop_command(self, terminal_id: str) -> OperationResult:
        async def call() -> OperationResult:
            return OperationResult.ok(stopped=await self.shell.stop(terminal_id))

        return await self._guard("stop_command", call)

    async def start_web_server(self, terminal_id: str) -> OperationResult:
        async def call() -> OperationResult:
            result = await self.web.start(terminal_id)
            if result.success:
                return OperationResult.ok(
                    url=result.url,
                    port=result.port,
                    container_name=result.container_name,
                    kind=result.kind.value if result.kind else None,
                )
            if result.error == WebErrorCode.PORT_IN_USE:
                raise PortInUseError(self.web.port)
            if result.error == WebErrorCode.SESSION_NOT_FOUND:
                raise SessionNotFoundError(terminal_id)
            return OperationResult(
                success=False,
                error={
                    "code": (result.error or "internal_error").lower(),
                    "message": result.detail or "Web server failed to start",
                    "details": {"terminal_id": terminal_id},
                },
            )

        return await self._guard("start_web_server", call)

    async def stop_web_server(self, terminal_id: str) -> OperationResult:
        async def call() -> OperationResult:
            return OperationResult.ok(stopped=await self.web.stop(terminal_id))

        return await self._guard("stop_web_server", call)

    async def web_logs(self, terminal_id: str, tail: int = 200) -> OperationResult:
        async def call() -> OperationResult:
            if self.sessions.get(terminal_id) is None:
                raise SessionNotFoundError(terminal_id)
            return OperationResult.ok(logs=await self.web.logs(terminal_id, tail=tail))

        return await self._guard("web_logs", call)

    async def close_session(self, terminal_id: str) -> OperationResult:
        async def call() -> OperationResult:
            return OperationResult.ok(closed=await self.sessions.close(terminal_id))

        return await self._guard("close_session", call)

    async def close_owner_sessions(self, owner_id: str) -> OperationResult:
        """Tear down everything a user owns (transport disconnect)."""

        async def call() -> OperationResult:
            return OperationResult.ok(closed=await self.sessions.close_owner(owner_id))

        return await self._guard("close_owner_sessions", call)

    async def validate_session(self, terminal_id: str) -> OperationResult:
        async def call() -> OperationResult:
            validation = await self.sessions.validate(terminal_id)
            return OperationResult.ok(**validation.model_dump())

        return await self._guard("validate_session", call)

    async def notify_file_changed(self, project_name: str, file_path: str) -> OperationResult:
        async def call() -> OperationResult:
            synced = await self.recovery.sync_file(project_name, file_path)
            return OperationResult.ok(synced=synced)

        return await self._guard("notify_file_changed", call)

    async def run_file(
        self,
        project_name: str,
        owner_id: str,
        file_path: str,
        *,
        args: Sequence[str] = (),
        stdin: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        run_id: str | None = None,
        on_stdout: OutputHandler | None = None,
        on_stderr: OutputHandler | None = None,
    ) -> OperationResult:
        async def call() -> OperationResult:
            result = await self.runner.run(
                project_name,
                owner_id,
                file_path,
                args=args,
                stdin=stdin,
                env=env,
                timeout=timeout,
                run_id=run_id,
                on_stdout=on_stdout,
                on_stderr=on_stderr,
            )
            return OperationResult.ok(**asdict(result))

        return await self._guard("run_file", call)

    async def stop_run(self, run_id: str) -> OperationResult:
        async def call() -> OperationResult:
            return OperationResult.ok(stopped=await self.runner.stop(run_id))

        return await self._guard("stop_run", call)

    def run_history(self) -> list[dict[str, Any]]:
        return [
            {**asdict(record), "started_at": record.started_at.isoformat()}
            for record in self.runner.history()
        ]
