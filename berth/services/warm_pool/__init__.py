"""Warm pool service for reusable run containers.

This module provides:
- WarmPool: containers keyed by (image, directory, limits) with idle TTL
- WarmPoolScheduler: periodic idle eviction
- Lifecycle management for engine startup/shutdown

Usage:
    from berth.services.warm_pool import WarmPool, WarmPoolScheduler

    pool = WarmPool(driver, settings.warm_pool)
    container = await pool.acquire("python:3.11-slim", "/srv/runs/demo")
"""

from berth.services.warm_pool.pool import PoolKey, WarmPool, WarmPoolEntry, WarmPoolStats
from berth.services.warm_pool.scheduler import WarmPoolScheduler

__all__ = [
    "PoolKey",
    "WarmPool",
    "WarmPoolEntry",
    "WarmPoolScheduler",
    "WarmPoolStats",
]
