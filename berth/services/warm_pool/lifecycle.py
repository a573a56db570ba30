"""Process-wide warm pool.

``init_warm_pool`` builds the pool and starts its eviction scheduler;
``shutdown_warm_pool`` stops the scheduler and removes every pooled
container.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from berth.config import get_settings
from berth.services.warm_pool.pool import WarmPool
from berth.services.warm_pool.scheduler import WarmPoolScheduler

if TYPE_CHECKING:
    from berth.config import WarmPoolConfig
    from berth.drivers.base import Driver

logger = structlog.get_logger()

_pool: WarmPool | None = None
_scheduler: WarmPoolScheduler | None = None


async def init_warm_pool(
    driver: "Driver",
    config: "WarmPoolConfig | None" = None,
) -> tuple[WarmPool | None, WarmPoolScheduler | None]:
    """Create the pool and start eviction.

    Returns:
        ``(pool, scheduler)``, or ``(None, None)`` when the pool is disabled
    """
    global _pool, _scheduler

    config = config or get_settings().warm_pool
    if not config.enabled:
        logger.info("warm_pool.disabled")
        return None, None

    _pool = WarmPool(driver, config)
    _scheduler = WarmPoolScheduler(config, _pool)
    await _scheduler.start()
    logger.info("warm_pool.ready", harden=config.harden, idle_ttl_seconds=config.idle_ttl_seconds)
    return _pool, _scheduler


async def shutdown_warm_pool() -> None:
    global _pool, _scheduler

    scheduler, _scheduler = _scheduler, None
    if scheduler is not None:
        await scheduler.stop()

    pool, _pool = _pool, None
    if pool is None:
        return
    try:
        removed = await pool.drain()
    except Exception as exc:
        # Leftover containers carry the berth labels and can be removed by hand
        logger.warning("warm_pool.drain_failed", error=str(exc))
        return
    logger.info("warm_pool.drained", removed=removed)


def get_warm_pool() -> WarmPool | None:
    return _pool


def get_warm_pool_scheduler() -> WarmPoolScheduler | None:
    return _scheduler
