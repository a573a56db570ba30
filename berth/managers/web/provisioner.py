"""WebServerProvisioner - static nginx previews of session workspaces.

All sessions share ONE fixed host port (``web.port``). Provisioning never
falls back to another port: if the port is held by something we do not own,
the request fails with ``PORT_IN_USE``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
import structlog

from berth.concurrency.locks import WEB_SCOPE, get_session_lock
from berth.drivers.base import ContainerSpec, Driver, Mount, PortBinding
from berth.errors import ContainerCreateError
from berth.managers.session import naming
from berth.managers.web.nginx import ContentKind, classify_directory, classify_names, render_config
from berth.models.session import Session, SourceKind
from berth.services.events import WebServerReady
from berth.utils.ports import check_port_available

if TYPE_CHECKING:
    from berth.managers.session import SessionManager
    from berth.services.events import EventBus

logger = structlog.get_logger()

NGINX_ROOT = "/usr/share/nginx/html"
NGINX_CONF = "/etc/nginx/conf.d/default.conf"


class WebErrorCode:
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    NO_MOUNT_SOURCE = "NO_MOUNT_SOURCE"
    PORT_IN_USE = "PORT_IN_USE"
    CREATE_FAILED = "CREATE_FAILED"


@dataclass
class WebServerResult:
    success: bool
    url: str | None = None
    port: int | None = None
    container_name: str | None = None
    kind: ContentKind | None = None
    error: str | None = None
    detail: str | None = None

    @classmethod
    def failure(cls, error: str, detail: str) -> WebServerResult:
        return cls(success=False, error=error, detail=detail)


class WebServerProvisioner:
    """Starts, replaces and stops a session's web preview container."""

    def __init__(
        self,
        driver: Driver,
        sessions: "SessionManager",
        events: "EventBus | None" = None,
    ) -> None:
        self._driver = driver
        self._sessions = sessions
        self._events = events
        self._settings = sessions.settings
        self._log = logger.bind(manager="web")

    @property
    def port(self) -> int:
        return self._settings.web.port

    def url_for(self, port: int) -> str:
        return f"http://{self._settings.web.host}:{port}"

    async def start(self, terminal_id: str) -> WebServerResult:
        """(Re)provision the preview for a terminal.

        Calls for the same terminal are serialized, so two rapid calls still
        leave exactly one web container.
        """
        async with get_session_lock(terminal_id, WEB_SCOPE):
            session = self._sessions.get(terminal_id)
            if session is None:
                return WebServerResult.failure(
                    WebErrorCode.SESSION_NOT_FOUND, f"No session for terminal {terminal_id}"
                )
            return await self.provision(session)

    async def provision(self, session: Session) -> WebServerResult:
        """Provision without taking the web lock; the caller must hold it."""
        port = self.port
        self._log.info("web.provision", terminal_id=session.terminal_id, port=port)

        if not session.container_name:
            return WebServerResult.failure(WebErrorCode.NO_MOUNT_SOURCE, "Session has no container")
        if session.source_kind == SourceKind.BIND and not Path(session.source).is_dir():
            return WebServerResult.failure(
                WebErrorCode.NO_MOUNT_SOURCE, f"Workspace source {session.source} does not exist"
            )

        # The primary container must not hold the preview port
        if session.port == port:
            self._log.warning("web.primary_holds_port", container=session.container_name, port=port)
            await self._driver.stop(session.container_name)

        await self._sessions.remove_web_containers(session)
        self._discard_config(session)

        if not check_port_available(port):
            self._log.warning("web.port_in_use", terminal_id=session.terminal_id, port=port)
            self._clear_web_fields(session)
            return WebServerResult.failure(
                WebErrorCode.PORT_IN_USE, f"Port {port} is already in use"
            )

        kind = await self._classify(session)
        web_name = naming.web_container_name(session.container_name)
        config_path = self._write_config(web_name, kind)

        spec = ContainerSpec(
            name=web_name,
            image=self._settings.web.image,
            command=[],
            mounts=[
                Mount(
                    source=session.source,
                    target=NGINX_ROOT,
                    read_only=True,
                    volume=session.source_kind == SourceKind.VOLUME,
                ),
                Mount(source=str(config_path), target=NGINX_CONF, read_only=True),
            ],
            ports=[PortBinding(host_port=port, container_port=80, host_ip="0.0.0.0")],
            labels={"berth.terminal_id": session.terminal_id, "berth.role": "web"},
            remove_on_exit=True,
        )
        try:
            await self._driver.run(spec)
        except ContainerCreateError as exc:
            config_path.unlink(missing_ok=True)
            self._clear_web_fields(session)
            return WebServerResult.failure(
                WebErrorCode.CREATE_FAILED, exc.details.get("stderr") or exc.message
            )

        url = self.url_for(port)
        await self._wait_for_ready(url)

        session.web_container_name = web_name
        session.web_port = port
        session.web_config_path = str(config_path)
        if not self._sessions.update(session):
            # Closed while nginx was starting
            await self._driver.stop_and_remove(web_name)
            config_path.unlink(missing_ok=True)
            return WebServerResult.failure(
                WebErrorCode.SESSION_NOT_FOUND, f"No session for terminal {session.terminal_id}"
            )

        self._log.info(
            "web.ready",
            terminal_id=session.terminal_id,
            container=web_name,
            url=url,
            kind=kind.value,
        )
        if self._events is not None:
            self._events.emit(
                WebServerReady(
                    terminal_id=session.terminal_id,
                    container_name=web_name,
                    url=url,
                    port=port,
                )
            )
        return WebServerResult(
            success=True,
            url=url,
            port=port,
            container_name=web_name,
            kind=kind,
        )

    async def stop(self, terminal_id: str) -> bool:
        """Remove the terminal's preview; False if it had none."""
        async with get_session_lock(terminal_id, WEB_SCOPE):
            session = self._sessions.get(terminal_id)
            if session is None or not session.container_name:
                return False
            removed = await self._sessions.remove_web_containers(session)
            had_web = session.has_web_server or bool(removed)
            self._discard_config(session)
            self._clear_web_fields(session)
            self._log.info("web.stopped", terminal_id=terminal_id, removed=len(removed))
            return had_web

    async def logs(self, terminal_id: str, tail: int = 200) -> str:
        session = self._sessions.get(terminal_id)
        if session is None or not session.web_container_name:
            return ""
        return await self._driver.logs(session.web_container_name, tail=tail)

    async def _classify(self, session: Session) -> ContentKind:
        if session.source_kind == SourceKind.BIND:
            return classify_directory(Path(session.source))

        if not session.container_name:
            return ContentKind.LISTING
        listing = await self._driver.exec(
            session.container_name,
            ["ls", "-1", self._settings.workspace.mount_path],
        )
        if not listing.ok:
            return ContentKind.LISTING
        return classify_names(line.strip() for line in listing.stdout.splitlines())

    def _write_config(self, web_name: str, kind: ContentKind) -> Path:
        directory = self._settings.state.web_config_dir.resolve()
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{web_name}.conf"
        path.write_text(render_config(kind), encoding="utf-8")
        return path

    def _discard_config(self, session: Session) -> None:
        if session.web_config_path:
            Path(session.web_config_path).unlink(missing_ok=True)

    def _clear_web_fields(self, session: Session) -> None:
        if session.web_container_name is None and session.web_config_path is None:
            return
        session.web_container_name = None
        session.web_port = None
        session.web_config_path = None
        self._sessions.update(session)

    async def _wait_for_ready(self, url: str) -> bool:
        """Poll the preview until nginx answers or the timeout passes."""
        timeout = self._settings.web.ready_timeout
        if timeout <= 0:
            return True

        deadline = time.monotonic() + timeout
        async with httpx.AsyncClient(timeout=1.0) as client:
            while time.monotonic() < deadline:
                try:
                    response = await client.get(url)
                    if response.status_code < 500:
                        return True
                except httpx.RequestError:
                    pass
                await asyncio.sleep(0.2)

        self._log.warning("web.ready_timeout", url=url, timeout=timeout)
        return False
