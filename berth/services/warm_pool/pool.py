"""WarmPool - reusable run containers keyed by image, directory and limits.

At most one live container exists per key. Containers idle for longer than
``idle_ttl_seconds`` are evicted by the scheduler.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

import structlog

from berth.drivers.base import ContainerSpec, Mount
from berth.managers.session import naming

if TYPE_CHECKING:
    from berth.config import ResourceSpec, WarmPoolConfig
    from berth.drivers.base import Driver

logger = structlog.get_logger()

WORKSPACE_DIR = "/workspace"


@dataclass(frozen=True, slots=True)
class PoolKey:
    image: str
    source_dir: str
    cpus: float
    memory: str
    pids: int

    def __str__(self) -> str:
        return f"{self.image}|{self.source_dir}|cpus={self.cpus}|mem={self.memory}|pids={self.pids}"


@dataclass
class WarmPoolEntry:
    key: PoolKey
    container_name: str
    last_used: float
    uses: int = 0


@dataclass
class WarmPoolStats:
    """Observable statistics for the warm pool."""

    created_total: int = 0
    reused_total: int = 0
    evicted_total: int = 0
    replaced_dead_total: int = 0


class WarmPool:
    """Pool of ``sleep infinity`` containers reused across runs."""

    def __init__(
        self,
        driver: "Driver",
        config: "WarmPoolConfig",
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._driver = driver
        self._config = config
        self._clock = clock
        self._entries: dict[PoolKey, WarmPoolEntry] = {}
        self._lock = asyncio.Lock()
        self._stats = WarmPoolStats()
        self._log = logger.bind(service="warm_pool")

    @property
    def stats(self) -> WarmPoolStats:
        return self._stats

    def entries(self) -> list[WarmPoolEntry]:
        return list(self._entries.values())

    def key_for(
        self,
        image: str,
        source_dir: str,
        resources: "ResourceSpec | None" = None,
    ) -> PoolKey:
        limits = resources or self._config.resources
        return PoolKey(
            image=image,
            source_dir=source_dir,
            cpus=limits.cpus,
            memory=limits.memory,
            pids=limits.pids,
        )

    async def acquire(
        self,
        image: str,
        source_dir: str,
        resources: "ResourceSpec | None" = None,
    ) -> str:
        """Return the running container for the key, creating it if needed."""
        key = self.key_for(image, source_dir, resources)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                if await self._driver.is_running(entry.container_name):
                    entry.last_used = self._clock()
                    entry.uses += 1
                    self._stats.reused_total += 1
                    self._log.debug("warm_pool.reuse", key=str(key), container=entry.container_name)
                    return entry.container_name

                self._log.warning("warm_pool.dead_entry", key=str(key), container=entry.container_name)
                del self._entries[key]
                await self._driver.remove(entry.container_name)
                self._stats.replaced_dead_total += 1

            name = naming.warm_container_name()
            limits = resources or self._config.resources
            spec = ContainerSpec(
                name=name,
                image=image,
                mounts=[Mount(source=source_dir, target=WORKSPACE_DIR)],
                workdir=WORKSPACE_DIR,
                resources=limits,
                labels={"berth.role": "warm"},
                harden=self._config.harden,
            )
            await self._driver.run(spec)

            self._entries[key] = WarmPoolEntry(
                key=key,
                container_name=name,
                last_used=self._clock(),
                uses=1,
            )
            self._stats.created_total += 1
            self._log.info("warm_pool.created", key=str(key), container=name)
            return name

    async def evict_idle(self) -> list[str]:
        """Remove entries idle for longer than the TTL; returns their containers."""
        now = self._clock()
        ttl = self._config.idle_ttl_seconds
        async with self._lock:
            expired = [e for e in self._entries.values() if now - e.last_used > ttl]
            for entry in expired:
                del self._entries[entry.key]

        for entry in expired:
            await self._driver.remove(entry.container_name)
            self._stats.evicted_total += 1
            self._log.info(
                "warm_pool.evicted",
                container=entry.container_name,
                idle_seconds=round(now - entry.last_used, 1),
            )
        return [e.container_name for e in expired]

    async def discard(self, container_name: str) -> bool:
        """Drop the entry holding ``container_name`` and remove the container.

        Used when a run may have left a process behind in the container.
        """
        async with self._lock:
            entry = next(
                (e for e in self._entries.values() if e.container_name == container_name), None
            )
            if entry is not None:
                del self._entries[entry.key]
        if entry is None:
            return False
        await self._driver.remove(container_name)
        self._stats.evicted_total += 1
        self._log.info("warm_pool.discarded", key=str(entry.key), container=container_name)
        return True

    async def drain(self) -> int:
        """Remove every pooled container."""
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            await self._driver.remove(entry.container_name)
        if entries:
            self._log.info("warm_pool.drained", removed=len(entries))
        return len(entries)
