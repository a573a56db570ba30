"""WarmPoolScheduler - periodic eviction of idle pool containers."""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from berth.utils.datetime import utcnow

if TYPE_CHECKING:
    from berth.config import WarmPoolConfig
    from berth.services.warm_pool.pool import WarmPool

logger = structlog.get_logger()


class WarmPoolScheduler:
    """Calls ``WarmPool.evict_idle`` every ``interval_seconds`` until stopped."""

    def __init__(self, config: "WarmPoolConfig", pool: "WarmPool") -> None:
        self._config = config
        self._pool = pool
        self._running = False
        self._task: asyncio.Task | None = None
        # Manual and scheduled cycles never overlap
        self._cycle_lock = asyncio.Lock()
        self.cycles = 0
        self.last_cycle_at: datetime | None = None
        self._log = logger.bind(service="warm_pool_scheduler")

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            self._log.warning("warm_pool_scheduler.already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="berth-warm-pool-eviction")
        self._log.info(
            "warm_pool_scheduler.started",
            interval_seconds=self._config.interval_seconds,
            idle_ttl_seconds=self._config.idle_ttl_seconds,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._log.info("warm_pool_scheduler.stopped", cycles=self.cycles)

    async def run_once(self) -> list[str]:
        """Run one eviction cycle.

        Returns:
            Names of the containers that were evicted
        """
        async with self._cycle_lock:
            evicted = await self._pool.evict_idle()
            self.cycles += 1
            self.last_cycle_at = utcnow()
        if evicted:
            self._log.info("warm_pool_scheduler.evicted", count=len(evicted))
        return evicted

    async def _loop(self) -> None:
        interval = self._config.interval_seconds
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.run_once()
            except Exception as exc:
                # Keep the loop alive; the next cycle retries
                self._log.exception("warm_pool_scheduler.cycle_failed", error=str(exc))
