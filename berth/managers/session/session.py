"""SessionManager - manages terminal session (container) lifecycle.

Key responsibility: open - materialize the project, pick an image, start a
uniquely named container and register it. Close is the exact inverse.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from berth.concurrency.locks import cleanup_session_lock
from berth.config import Settings, get_settings
from berth.drivers.base import ContainerSpec, Driver, Mount, PortBinding
from berth.errors import ContainerCreateError
from berth.managers.session import naming
from berth.managers.session.store import SessionStore
from berth.models.project import ProjectFile, ProjectRecord
from berth.models.session import Session, SessionValidation, SourceKind
from berth.services import materialize
from berth.services.events import ContainerReady
from berth.utils.ports import get_free_port
from berth.utils.process import OutputHandler
from berth.validators import require_name, validate_terminal_id

if TYPE_CHECKING:
    from berth.models.project import ProjectSource
    from berth.services.events import EventBus

logger = structlog.get_logger()


class SessionManager:
    """Manages terminal session (container) lifecycle."""

    def __init__(
        self,
        driver: Driver,
        store: SessionStore,
        projects: "ProjectSource | None" = None,
        events: "EventBus | None" = None,
        settings: Settings | None = None,
    ) -> None:
        self._driver = driver
        self._store = store
        self._projects = projects
        self._events = events
        self._settings = settings or get_settings()
        self._log = logger.bind(manager="session")

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def projects(self) -> "ProjectSource | None":
        return self._projects

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def driver(self) -> Driver:
        return self._driver

    def get(self, terminal_id: str) -> Session | None:
        return self._store.get(terminal_id)

    def list(self) -> list[Session]:
        return self._store.all()

    def update(self, session: Session) -> bool:
        """Store a modified session and persist the snapshot.

        Only the session currently registered for the terminal is written;
        a session closed or replaced meanwhile is dropped.

        Returns:
            False if ``session`` is no longer the registered one
        """
        if self._store.get(session.terminal_id) is not session:
            self._log.info("session.update.stale", terminal_id=session.terminal_id)
            return False
        self._store.put(session)
        return True

    async def find_project(self, project_name: str, owner_id: str) -> ProjectRecord | None:
        """Look the project up by owner first, then by name alone."""
        if self._projects is None:
            return None
        project = await self._projects.find_project(project_name, owner_id)
        if project is None:
            project = await self._projects.find_project(project_name, None)
        return project

    async def open(
        self,
        terminal_id: str,
        project_name: str,
        owner_id: str,
        *,
        on_output: OutputHandler | None = None,
    ) -> Session:
        """Create a session and its running container.

        Args:
            terminal_id: Caller-supplied terminal identifier
            project_name: Project to materialize into the workspace
            owner_id: Owning user
            on_output: Receives image pull progress

        Returns:
            The registered session

        Raises:
            ImagePullError: If the image is missing and cannot be pulled
            ContainerCreateError: If the runtime refuses the container
        """
        validate_terminal_id(terminal_id)
        require_name(project_name, "project_name")
        require_name(owner_id, "owner_id")

        if terminal_id in self._store:
            self._log.info("session.open.replace_existing", terminal_id=terminal_id)
            await self.close(terminal_id)

        self._log.info(
            "session.open",
            terminal_id=terminal_id,
            project=project_name,
            owner=owner_id,
        )

        workspace = self._settings.workspace
        project = await self.find_project(project_name, owner_id)
        files: list[ProjectFile] = []
        temp_dir: str | None = None
        volume: str | None = None
        container_name: str | None = None

        if project is not None and self._projects is not None:
            files = await self._projects.list_files(project)
        image = self._select_image(files, project_name, owner_id, project is not None)

        try:
            if project is None:
                directory = Path(workspace.projects_root) / owner_id / project_name
                if materialize.seed_placeholder(directory, project_name):
                    self._log.info("session.placeholder_seeded", path=str(directory))
                source, kind = str(directory.resolve()), SourceKind.BIND
            elif workspace.materialize_mode == "volume":
                volume = naming.volume_name(owner_id, project_name, terminal_id)
                await self._driver.create_volume(
                    volume, labels={"berth.terminal_id": terminal_id}
                )
                source, kind = volume, SourceKind.VOLUME
            else:
                temp_dir = self._make_temp_dir(project_name)
                count = materialize.write_tree(Path(temp_dir), files)
                self._log.info("session.materialized", path=temp_dir, files=count)
                source, kind = temp_dir, SourceKind.BIND

            await self.ensure_image(image, on_output)
            port = get_free_port(exclude={self._settings.web.port})
            container_name = await self._start_container(
                terminal_id, project_name, owner_id, image, source, kind, port
            )
            if kind == SourceKind.VOLUME and files:
                await materialize.push_tree(self._driver, container_name, files)
        except Exception:
            if container_name is not None:
                await self._driver.stop_and_remove(container_name)
            self._discard_temp_dir(temp_dir)
            if volume is not None:
                await self._driver.delete_volume(volume)
            raise

        session = Session(
            terminal_id=terminal_id,
            owner_id=owner_id,
            project_name=project_name,
            source=source,
            source_kind=kind,
            temp_dir=temp_dir,
            image=image,
            container_name=container_name,
            port=port,
            working_directory=workspace.mount_path,
        )
        self._store.put(session)

        self._log.info(
            "session.opened",
            terminal_id=terminal_id,
            container=container_name,
            image=image,
            port=port,
        )
        if self._events is not None:
            self._events.emit(
                ContainerReady(
                    terminal_id=terminal_id,
                    container_name=container_name,
                    image=image,
                    port=port,
                )
            )
        return session

    def _select_image(
        self,
        files: list[ProjectFile],
        project_name: str,
        owner_id: str,
        from_source: bool,
    ) -> str:
        if from_source:
            paths = [f.path for f in files]
        else:
            directory = Path(self._settings.workspace.projects_root) / owner_id / project_name
            paths = [p.name for p in directory.rglob("*")] if directory.is_dir() else []
        return materialize.detect_image(paths, self._settings.images)

    def _make_temp_dir(self, project_name: str) -> str:
        prefix = f"{self._settings.workspace.temp_prefix}{naming.slugify(project_name, 40)}-"
        root = self._settings.workspace.temp_root
        if root is not None:
            Path(root).mkdir(parents=True, exist_ok=True)
        temp_dir = tempfile.mkdtemp(prefix=prefix, dir=root)
        # Readable by the container user regardless of uid mapping
        os.chmod(temp_dir, 0o755)
        return temp_dir

    def _discard_temp_dir(self, temp_dir: str | None) -> None:
        if temp_dir is None:
            return
        try:
            shutil.rmtree(temp_dir)
        except FileNotFoundError:
            pass
        except OSError as exc:
            self._log.warning("session.temp_dir_cleanup_failed", path=temp_dir, error=str(exc))

    async def ensure_image(self, image: str, on_output: OutputHandler | None = None) -> None:
        """Pull ``image`` unless the runtime already has it."""
        if await self._driver.image_exists(image):
            return
        self._log.info("session.image_missing", image=image)
        await self._driver.pull_image(image, on_output=on_output)

    async def _start_container(
        self,
        terminal_id: str,
        project_name: str,
        owner_id: str,
        image: str,
        source: str,
        kind: SourceKind,
        port: int,
    ) -> str:
        base = naming.container_base_name(owner_id, project_name, terminal_id)

        # A leftover from a previous attempt of this terminal is ours to remove
        holder = self._store.terminal_for_container(base)
        if (holder is None or holder == terminal_id) and await self._driver.exists(base):
            self._log.info("session.cleanup_existing", container=base)
            await self._driver.stop_and_remove(base)

        name = await naming.resolve_unique_name(self._driver, base)
        mount_path = self._settings.workspace.mount_path
        spec = ContainerSpec(
            name=name,
            image=image,
            mounts=[Mount(source=source, target=mount_path, volume=kind == SourceKind.VOLUME)],
            ports=[PortBinding(host_port=port, container_port=self._settings.docker.container_port)],
            workdir=mount_path,
            resources=self._settings.resources,
            labels={
                "berth.terminal_id": terminal_id,
                "berth.owner": owner_id,
                "berth.project": project_name,
            },
        )
        await self._driver.run(spec)

        if not await self._driver.is_running(name):
            logs = await self._driver.logs(name, tail=50)
            await self._driver.remove(name)
            raise ContainerCreateError(
                f"Container {name} exited right after start",
                container_name=name,
                stderr=logs.strip(),
            )
        return name

    async def close(self, terminal_id: str, *, teardown: bool = True) -> bool:
        """Tear a session down completely.

        Args:
            terminal_id: Terminal to close
            teardown: Stop and remove the primary container. Recovery passes
                False because the container is already gone.

        Returns:
            False if the terminal was unknown
        """
        session = self._store.get(terminal_id)
        if session is None:
            return False

        self._log.info(
            "session.close",
            terminal_id=terminal_id,
            container=session.container_name,
            teardown=teardown,
        )

        if session.container_name:
            await self.remove_web_containers(session)
        if teardown and session.container_name:
            await self._driver.stop_and_remove(session.container_name)
        if session.source_kind == SourceKind.VOLUME:
            await self._driver.delete_volume(session.source)

        self._discard_temp_dir(session.temp_dir)
        if session.web_config_path:
            Path(session.web_config_path).unlink(missing_ok=True)

        self._store.remove(terminal_id)
        cleanup_session_lock(terminal_id)
        return True

    async def remove_web_containers(self, session: Session) -> list[str]:
        """Remove every web container ever started for the session's container."""
        if not session.container_name:
            return []
        prefix = naming.web_container_prefix(session.container_name)
        names = set(await self._driver.list_names(prefix))
        if session.web_container_name:
            names.add(session.web_container_name)
        for name in sorted(names):
            await self._driver.stop_and_remove(name)
        if names:
            self._log.info("session.web_containers_removed", terminal_id=session.terminal_id, count=len(names))
        return sorted(names)

    async def close_owner(self, owner_id: str) -> list[str]:
        """Close every session belonging to ``owner_id``."""
        closed = []
        for session in self._store.for_owner(owner_id):
            if await self.close(session.terminal_id):
                closed.append(session.terminal_id)
        self._log.info("session.close_owner", owner=owner_id, closed=len(closed))
        return closed

    async def close_project(self, project_name: str) -> list[str]:
        closed = []
        for session in self._store.for_project(project_name):
            if await self.close(session.terminal_id):
                closed.append(session.terminal_id)
        return closed

    async def validate(self, terminal_id: str) -> SessionValidation:
        """Report whether a terminal's session exists and its container runs."""
        session = self._store.get(terminal_id)
        if session is None:
            return SessionValidation(terminal_id=terminal_id, known=False, running=False, reason="not_found")
        if not session.container_name:
            return SessionValidation(terminal_id=terminal_id, known=True, running=False, reason="no_container")

        running = await self._driver.is_running(session.container_name)
        return SessionValidation(
            terminal_id=terminal_id,
            known=True,
            running=running,
            reason="ok" if running else "container_dead",
            container_name=session.container_name,
        )

    async def load_snapshot(self) -> list[Session]:
        """Re-adopt persisted sessions whose container is still running.

        Sessions whose container is gone are dropped; their remnants are
        left in place.

        Returns:
            The restored sessions
        """
        data = self._store.read_snapshot()
        alive: set[str] = set()
        for session in data.sessions.values():
            if session.container_name and await self._driver.is_running(session.container_name):
                alive.add(session.container_name)

        dropped = self._store.load(
            data,
            keep=lambda s: s.container_name in alive and not s.recovering,
        )
        for session in dropped:
            self._log.info(
                "session.snapshot.dropped",
                terminal_id=session.terminal_id,
                container=session.container_name,
            )
        restored = self._store.all()
        for session in restored:
            # No restart survives the process that started it
            session.auto_restart_pending = False
        self._store.persist()

        self._log.info("session.snapshot.restored", restored=len(restored), dropped=len(dropped))
        return restored
