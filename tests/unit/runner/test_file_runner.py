"""Unit tests for FileRunner."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from berth.config import Settings, WarmPoolConfig
from berth.errors import ProjectNotFoundError, ValidationError
from berth.managers.session import SessionManager, SessionStore
from berth.services.projects import InMemoryProjectSource
from berth.services.runner import FileRunner
from berth.services.warm_pool import WarmPool
from berth.utils.process import STOPPED, TIMED_OUT, ProcessResult
from tests.fakes import FakeDriver


@pytest.fixture(autouse=True)
def tool_project(projects: InMemoryProjectSource) -> None:
    projects.add_project(
        "tool",
        "alice",
        {"main.py": "print('hi')", "hello.c": "int main(){return 0;}", "lib": None},
    )


@pytest.fixture
def pool(driver: FakeDriver) -> WarmPool:
    return WarmPool(driver, WarmPoolConfig())


@pytest.fixture
def runner(driver: FakeDriver, manager: SessionManager, pool: WarmPool) -> FileRunner:
    return FileRunner(driver, manager, pool)


def run_dir(settings: Settings) -> Path:
    return Path(settings.state.state_dir).resolve() / "runs" / "alice" / "tool"


class TestRun:
    async def test_runs_in_pooled_container(
        self,
        runner: FileRunner,
        driver: FakeDriver,
        pool: WarmPool,
        test_settings: Settings,
    ):
        driver.exec_handler = lambda name, command: ProcessResult(exit_code=0, stdout="hi\n")
        chunks: list[str] = []

        result = await runner.run(
            "tool", "alice", "main.py", args=["a"], env={"MODE": "x"}, on_stdout=chunks.append
        )

        assert result.exit_code == 0
        assert result.stdout == "hi\n"
        assert chunks == ["hi\n"]
        assert result.run_id.startswith("run-")

        call = driver.exec_calls[-1]
        assert call.name == pool.entries()[0].container_name
        assert call.command == ["python", "main.py", "a"]
        assert call.workdir == "/workspace"
        assert call.env == {"MODE": "x"}
        assert driver.pulled == ["python:3.11-slim"]
        assert (run_dir(test_settings) / "main.py").read_text() == "print('hi')"
        assert (run_dir(test_settings) / "lib").is_dir()

    async def test_pool_container_is_reused_and_dir_refreshed(
        self,
        runner: FileRunner,
        driver: FakeDriver,
        test_settings: Settings,
    ):
        await runner.run("tool", "alice", "main.py")
        stray = run_dir(test_settings) / "stray.txt"
        stray.write_text("left over")

        await runner.run("tool", "alice", "main.py")

        assert len(driver.run_calls) == 1
        assert not stray.exists()
        assert (run_dir(test_settings) / "main.py").exists()

    async def test_compile_failure_stops_plan(self, runner: FileRunner, driver: FakeDriver):
        driver.exec_handler = lambda name, command: (
            ProcessResult(exit_code=1, stderr="hello.c: error\n") if command[0] == "gcc" else None
        )

        result = await runner.run("tool", "alice", "hello.c")

        assert result.exit_code == 1
        assert result.stderr == "hello.c: error\n"
        assert [c.command[0] for c in driver.exec_calls] == ["gcc"]

    async def test_stdin_goes_to_last_step(self, runner: FileRunner, driver: FakeDriver):
        await runner.run("tool", "alice", "hello.c", stdin="42\n")

        compile_call, run_call = driver.exec_calls
        assert compile_call.stdin is None
        assert run_call.stdin == "42\n"

    async def test_timeout_is_reported(self, runner: FileRunner, driver: FakeDriver):
        driver.exec_handler = lambda name, command: ProcessResult(exit_code=TIMED_OUT)

        result = await runner.run("tool", "alice", "main.py", timeout=1.5)

        assert result.timed_out is True
        assert result.exit_code == TIMED_OUT
        assert 0 < driver.exec_calls[-1].timeout <= 1.5

    async def test_timed_out_container_leaves_pool(
        self,
        runner: FileRunner,
        driver: FakeDriver,
        pool: WarmPool,
    ):
        driver.exec_handler = lambda name, command: ProcessResult(exit_code=TIMED_OUT)
        await runner.run("tool", "alice", "main.py", timeout=1.5)
        used = driver.run_calls[0].name

        assert pool.entries() == []
        assert used not in driver.containers

        driver.exec_handler = None
        result = await runner.run("tool", "alice", "main.py")

        assert result.exit_code == 0
        assert len(driver.run_calls) == 2
        assert driver.exec_calls[-1].name != used

    async def test_history_is_bounded(
        self,
        driver: FakeDriver,
        store: SessionStore,
        projects: InMemoryProjectSource,
        test_settings: Settings,
    ):
        settings = test_settings.model_copy(
            update={"runner": test_settings.runner.model_copy(update={"max_history": 2})}
        )
        runner = FileRunner(driver, SessionManager(driver, store, projects, None, settings))

        ids = [(await runner.run("tool", "alice", "main.py")).run_id for _ in range(3)]

        assert [r.run_id for r in runner.history()] == ids[1:]
        assert runner.history()[-1].file_path == "main.py"


class TestEphemeral:
    async def test_container_removed_after_run(
        self,
        driver: FakeDriver,
        manager: SessionManager,
    ):
        runner = FileRunner(driver, manager)

        await runner.run("tool", "alice", "main.py")

        spec = driver.run_calls[0]
        assert spec.harden is True
        assert spec.name in driver.remove_calls
        assert driver.containers == {}


class TestRejections:
    async def test_unsupported_file(self, runner: FileRunner):
        with pytest.raises(ValidationError):
            await runner.run("tool", "alice", "notes.md")

    async def test_unknown_project(self, runner: FileRunner):
        with pytest.raises(ProjectNotFoundError):
            await runner.run("ghost", "alice", "main.py")

    async def test_unknown_file(self, runner: FileRunner):
        with pytest.raises(ProjectNotFoundError):
            await runner.run("tool", "alice", "other.py")

    async def test_path_traversal(self, runner: FileRunner):
        with pytest.raises(ValidationError):
            await runner.run("tool", "alice", "../main.py")


class TestStop:
    async def test_stop_running(self, runner: FileRunner, driver: FakeDriver):
        driver.blocking.add("python")

        task = asyncio.create_task(runner.run("tool", "alice", "main.py", run_id="run-x"))
        while "run-x" not in runner.active_runs():
            await asyncio.sleep(0.01)

        assert await runner.stop("run-x") is True
        result = await task

        assert result.stopped is True
        assert result.exit_code == STOPPED
        assert runner.active_runs() == []

    async def test_stopped_container_leaves_pool(
        self,
        runner: FileRunner,
        driver: FakeDriver,
        pool: WarmPool,
    ):
        driver.blocking.add("python")
        task = asyncio.create_task(runner.run("tool", "alice", "main.py", run_id="run-x"))
        while "run-x" not in runner.active_runs():
            await asyncio.sleep(0.01)
        used = pool.entries()[0].container_name

        await runner.stop("run-x")
        await task

        assert pool.entries() == []
        assert used not in driver.containers
        assert pool.stats.evicted_total == 1

    async def test_stop_unknown(self, runner: FileRunner):
        assert await runner.stop("run-missing") is False
