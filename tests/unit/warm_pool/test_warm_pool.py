"""Unit tests for the warm pool and its eviction scheduler."""

from __future__ import annotations

import asyncio

import pytest

from berth.config import ResourceSpec, WarmPoolConfig
from berth.services.warm_pool import PoolKey, WarmPool, WarmPoolScheduler
from berth.services.warm_pool import lifecycle
from tests.fakes import FakeDriver


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> WarmPoolConfig:
    return WarmPoolConfig(idle_ttl_seconds=60, interval_seconds=1)


@pytest.fixture
def pool(driver: FakeDriver, config: WarmPoolConfig, clock: FakeClock) -> WarmPool:
    return WarmPool(driver, config, clock=clock)


class TestAcquire:
    async def test_creates_hardened_container(self, pool: WarmPool, driver: FakeDriver):
        name = await pool.acquire("python:3.11-slim", "/runs/alice/tool")

        spec = driver.run_calls[0]
        assert spec.name == name
        assert spec.command == ["sleep", "infinity"]
        assert spec.harden is True
        assert spec.mounts[0].source == "/runs/alice/tool"
        assert spec.mounts[0].target == "/workspace"
        assert pool.stats.created_total == 1

    async def test_same_key_reuses_container(self, pool: WarmPool, driver: FakeDriver):
        first = await pool.acquire("python:3.11-slim", "/runs/a")
        second = await pool.acquire("python:3.11-slim", "/runs/a")

        assert first == second
        assert len(driver.run_calls) == 1
        assert pool.stats.reused_total == 1
        assert pool.entries()[0].uses == 2

    async def test_key_includes_limits(self, pool: WarmPool, driver: FakeDriver):
        first = await pool.acquire("python:3.11-slim", "/runs/a")
        second = await pool.acquire(
            "python:3.11-slim", "/runs/a", ResourceSpec(cpus=2.0, memory="1g", pids=128)
        )
        third = await pool.acquire("node:20-alpine", "/runs/a")

        assert len({first, second, third}) == 3
        assert driver.run_calls[1].resources.memory == "1g"

    async def test_dead_entry_is_replaced(self, pool: WarmPool, driver: FakeDriver):
        first = await pool.acquire("python:3.11-slim", "/runs/a")
        driver.kill_container(first)

        second = await pool.acquire("python:3.11-slim", "/runs/a")

        assert second != first
        assert first in driver.remove_calls
        assert pool.stats.replaced_dead_total == 1
        assert len(pool.entries()) == 1

    async def test_concurrent_acquire_creates_one(self, pool: WarmPool, driver: FakeDriver):
        names = await asyncio.gather(
            *(pool.acquire("python:3.11-slim", "/runs/a") for _ in range(5))
        )

        assert len(set(names)) == 1
        assert len(driver.run_calls) == 1

    def test_key_string(self, pool: WarmPool):
        key = pool.key_for("gcc:12", "/runs/a")

        assert key == PoolKey("gcc:12", "/runs/a", 1.0, "512m", 256)
        assert str(key) == "gcc:12|/runs/a|cpus=1.0|mem=512m|pids=256"


class TestEviction:
    async def test_idle_entries_are_evicted(
        self,
        pool: WarmPool,
        driver: FakeDriver,
        clock: FakeClock,
    ):
        old = await pool.acquire("python:3.11-slim", "/runs/a")
        clock.now += 30
        fresh = await pool.acquire("gcc:12", "/runs/b")
        clock.now += 40

        evicted = await pool.evict_idle()

        assert evicted == [old]
        assert old not in driver.containers
        assert fresh in driver.containers
        assert pool.stats.evicted_total == 1

    async def test_use_refreshes_idle_time(self, pool: WarmPool, clock: FakeClock):
        await pool.acquire("python:3.11-slim", "/runs/a")
        clock.now += 50
        await pool.acquire("python:3.11-slim", "/runs/a")
        clock.now += 50

        assert await pool.evict_idle() == []

    async def test_discard_removes_entry(self, pool: WarmPool, driver: FakeDriver):
        name = await pool.acquire("python:3.11-slim", "/runs/a")

        assert await pool.discard(name) is True
        assert pool.entries() == []
        assert name not in driver.containers
        assert await pool.discard(name) is False

    async def test_drain_removes_everything(self, pool: WarmPool, driver: FakeDriver):
        await pool.acquire("python:3.11-slim", "/runs/a")
        await pool.acquire("gcc:12", "/runs/a")

        assert await pool.drain() == 2
        assert driver.containers == {}
        assert pool.entries() == []


class TestScheduler:
    async def test_run_once(self, pool: WarmPool, config: WarmPoolConfig, clock: FakeClock):
        name = await pool.acquire("python:3.11-slim", "/runs/a")
        clock.now += 120
        scheduler = WarmPoolScheduler(config=config, pool=pool)

        assert await scheduler.run_once() == [name]
        assert scheduler.cycles == 1
        assert scheduler.last_cycle_at is not None

    async def test_start_and_stop(self, pool: WarmPool, config: WarmPoolConfig):
        scheduler = WarmPoolScheduler(config=config, pool=pool)

        await scheduler.start()
        assert scheduler.is_running
        await scheduler.start()

        await scheduler.stop()
        assert not scheduler.is_running
        await scheduler.stop()


class TestLifecycle:
    async def test_disabled(self, driver: FakeDriver):
        assert await lifecycle.init_warm_pool(driver, WarmPoolConfig(enabled=False)) == (None, None)
        assert lifecycle.get_warm_pool() is None

    async def test_init_and_shutdown(self, driver: FakeDriver, config: WarmPoolConfig):
        pool, scheduler = await lifecycle.init_warm_pool(driver, config)
        try:
            assert lifecycle.get_warm_pool() is pool
            assert lifecycle.get_warm_pool_scheduler() is scheduler
            assert scheduler.is_running
            await pool.acquire("python:3.11-slim", "/runs/a")
        finally:
            await lifecycle.shutdown_warm_pool()

        assert lifecycle.get_warm_pool() is None
        assert not scheduler.is_running
        assert driver.containers == {}
