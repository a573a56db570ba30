"""Test configuration and fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from berth.concurrency.locks import reset_session_locks
from berth.config import Settings
from berth.db.snapshot import SnapshotFile
from berth.managers.recovery import RecoveryController
from berth.managers.session import SessionManager, SessionStore
from berth.managers.shell import CommandChannel
from berth.managers.web import WebServerProvisioner
from berth.services.events import EventBus
from berth.services.projects import InMemoryProjectSource
from tests.fakes import FakeDriver


@pytest.fixture(autouse=True)
def _reset_locks():
    reset_session_locks()
    yield
    reset_session_locks()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings rooted in the test's temp dir, with readiness probing off."""
    return Settings(
        workspace={
            "projects_root": str(tmp_path / "projects"),
            "temp_root": str(tmp_path / "tmp"),
        },
        state={"state_dir": str(tmp_path / "state")},
        web={"port": 18088, "ready_timeout": 0},
        warm_pool={"enabled": False},
        images={"prepull": []},
    )


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def projects() -> InMemoryProjectSource:
    source = InMemoryProjectSource()
    source.add_project(
        "site",
        "alice",
        {
            "index.html": "<h1>hello</h1>",
            "package.json": '{"name": "site"}',
            "src": None,
            "src/app.js": "console.log('hi')",
        },
    )
    return source


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def store(test_settings: Settings) -> SessionStore:
    return SessionStore(SnapshotFile(test_settings.state.snapshot_path))


@pytest.fixture
def manager(
    driver: FakeDriver,
    store: SessionStore,
    projects: InMemoryProjectSource,
    events: EventBus,
    test_settings: Settings,
) -> SessionManager:
    return SessionManager(driver, store, projects, events, test_settings)


@pytest.fixture
def port_free(monkeypatch: pytest.MonkeyPatch) -> None:
    """Treat the fixed web port as free."""
    monkeypatch.setattr(
        "berth.managers.web.provisioner.check_port_available",
        lambda port, host="0.0.0.0": True,
    )


@pytest.fixture
def web(driver: FakeDriver, manager: SessionManager, events: EventBus) -> WebServerProvisioner:
    return WebServerProvisioner(driver, manager, events)


@pytest.fixture
def recovery(
    driver: FakeDriver,
    manager: SessionManager,
    web: WebServerProvisioner,
    events: EventBus,
) -> RecoveryController:
    return RecoveryController(driver, manager, web, events)


@pytest.fixture
def channel(
    driver: FakeDriver,
    manager: SessionManager,
    recovery: RecoveryController,
    events: EventBus,
) -> CommandChannel:
    return CommandChannel(driver, manager, recovery, events)
