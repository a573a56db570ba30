"""FileRunner - runs a single project file in a pooled container.

The project tree is refreshed into a stable per-project run directory so the
warm pool key (image, directory, limits) stays the same across runs.
"""

from __future__ import annotations

import asyncio
import shutil
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Mapping, Sequence

import structlog

from berth.concurrency.locks import get_session_lock
from berth.drivers.base import ContainerSpec, Mount
from berth.errors import ProjectNotFoundError
from berth.managers.session import naming
from berth.services import materialize
from berth.services.runner.plan import plan_for, sanitize_inputs
from berth.utils.datetime import utcnow
from berth.utils.process import STOPPED, TIMED_OUT, OutputHandler, ProcessHandle
from berth.validators import validate_relative_path

if TYPE_CHECKING:
    from berth.drivers.base import Driver
    from berth.managers.session import SessionManager
    from berth.services.warm_pool import WarmPool

logger = structlog.get_logger()

RUN_SCOPE = "run"
WORKSPACE_DIR = "/workspace"


@dataclass
class RunResult:
    run_id: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    stopped: bool = False


@dataclass
class RunRecord:
    """History entry for a finished run."""

    run_id: str
    project_name: str
    owner_id: str
    file_path: str
    exit_code: int
    duration_ms: int
    started_at: datetime = field(default_factory=utcnow)
    timed_out: bool = False
    stopped: bool = False


class FileRunner:
    """Plans and executes one-off file runs."""

    def __init__(
        self,
        driver: "Driver",
        sessions: "SessionManager",
        pool: "WarmPool | None" = None,
    ) -> None:
        self._driver = driver
        self._sessions = sessions
        self._pool = pool
        self._settings = sessions.settings
        self._history: deque[RunRecord] = deque(maxlen=self._settings.runner.max_history)
        self._active: dict[str, ProcessHandle] = {}
        self._log = logger.bind(service="runner")

    def history(self) -> list[RunRecord]:
        return list(self._history)

    def active_runs(self) -> list[str]:
        return [run_id for run_id, handle in self._active.items() if handle.running]

    async def run(
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
    ) -> RunResult:
        """Run ``file_path`` from the project.

        Raises:
            ValidationError: Unsupported file type or inputs over the limits
            ProjectNotFoundError: Unknown project or file
            ImagePullError: Missing runtime image that cannot be pulled
        """
        runner_config = self._settings.runner
        rel_path = validate_relative_path(file_path)
        args, env, stdin = sanitize_inputs(runner_config, args=args, env=env, stdin=stdin)
        plan = plan_for(rel_path, runner_config.images, args=args)
        run_id = run_id or f"run-{uuid.uuid4().hex[:12]}"
        timeout = timeout or runner_config.default_timeout

        project = await self._sessions.find_project(project_name, owner_id)
        projects = self._sessions.projects
        if project is None or projects is None:
            raise ProjectNotFoundError(
                f"Project {project_name} not found",
                details={"project_name": project_name, "owner_id": owner_id},
            )
        files = await projects.list_files(project)
        if not any(f.path == rel_path and not f.is_folder for f in files):
            raise ProjectNotFoundError(
                f"File {rel_path} not found in {project_name}",
                details={"project_name": project_name, "file_path": rel_path},
            )

        self._log.info(
            "runner.run",
            run_id=run_id,
            project=project_name,
            file=rel_path,
            image=plan.image,
            steps=len(plan.steps),
        )

        run_key = f"{project.owner_id}/{project.name}"
        async with get_session_lock(run_key, RUN_SCOPE):
            run_dir = self._refresh_run_dir(project.owner_id, project.name, files)
            await self._sessions.ensure_image(plan.image)

            ephemeral: str | None = None
            if self._pool is not None:
                container = await self._pool.acquire(plan.image, str(run_dir))
            else:
                ephemeral = await self._start_ephemeral(plan.image, run_dir)
                container = ephemeral

            started = utcnow()
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            stdout_parts: list[str] = []
            stderr_parts: list[str] = []
            exit_code = 0
            timed_out = stopped = False

            def register(handle: ProcessHandle) -> None:
                self._active[run_id] = handle

            try:
                for index, step in enumerate(plan.steps):
                    last = index == len(plan.steps) - 1
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        exit_code, timed_out = TIMED_OUT, True
                        break
                    result = await self._driver.exec(
                        container,
                        step,
                        workdir=WORKSPACE_DIR,
                        env=env,
                        stdin=stdin if last else None,
                        timeout=remaining,
                        on_stdout=on_stdout,
                        on_stderr=on_stderr,
                        on_process=register,
                    )
                    stdout_parts.append(result.stdout)
                    stderr_parts.append(result.stderr)
                    exit_code = result.exit_code
                    if exit_code == TIMED_OUT:
                        timed_out = True
                    elif exit_code == STOPPED:
                        stopped = True
                    if exit_code != 0:
                        break
            finally:
                self._active.pop(run_id, None)
                if ephemeral is not None:
                    await self._driver.remove(ephemeral)
                elif self._pool is not None and (timed_out or stopped):
                    # Killing the exec client leaves the program running in the container
                    await self._pool.discard(container)

        duration_ms = int((utcnow() - started).total_seconds() * 1000)
        self._history.append(
            RunRecord(
                run_id=run_id,
                project_name=project.name,
                owner_id=project.owner_id,
                file_path=rel_path,
                exit_code=exit_code,
                duration_ms=duration_ms,
                started_at=started,
                timed_out=timed_out,
                stopped=stopped,
            )
        )
        self._log.info(
            "runner.completed",
            run_id=run_id,
            exit_code=exit_code,
            duration_ms=duration_ms,
            timed_out=timed_out,
            stopped=stopped,
        )
        return RunResult(
            run_id=run_id,
            exit_code=exit_code,
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
            duration_ms=duration_ms,
            timed_out=timed_out,
            stopped=stopped,
        )

    async def stop(self, run_id: str) -> bool:
        handle = self._active.get(run_id)
        if handle is None or not handle.running:
            return False
        self._log.info("runner.stop", run_id=run_id)
        handle.kill()
        return True

    def _refresh_run_dir(self, owner_id: str, project_name: str, files) -> Path:
        run_dir = (
            Path(self._settings.state.state_dir)
            / "runs"
            / naming.slugify(owner_id)
            / naming.slugify(project_name)
        ).resolve()
        run_dir.mkdir(parents=True, exist_ok=True)
        # Clear contents in place; pooled containers hold a bind mount of the directory
        for child in run_dir.iterdir():
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
        materialize.write_tree(run_dir, files)
        return run_dir

    async def _start_ephemeral(self, image: str, run_dir: Path) -> str:
        name = f"{naming.warm_container_name()}-run"
        spec = ContainerSpec(
            name=name,
            image=image,
            mounts=[Mount(source=str(run_dir), target=WORKSPACE_DIR)],
            workdir=WORKSPACE_DIR,
            resources=self._settings.warm_pool.resources,
            labels={"berth.role": "run"},
            harden=self._settings.warm_pool.harden,
        )
        await self._driver.run(spec)
        return name
