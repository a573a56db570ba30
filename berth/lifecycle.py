"""Engine lifecycle management.

Startup order: logging, runtime ping, image pre-pull, warm pool, engine,
snapshot restore. Shutdown reverses the parts that own resources.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from berth.config import Settings, get_settings
from berth.drivers import DockerCliDriver
from berth.engine import Engine
from berth.errors import ImagePullError
from berth.logging import configure_logging
from berth.services.warm_pool.lifecycle import init_warm_pool, shutdown_warm_pool

if TYPE_CHECKING:
    from berth.drivers.base import Driver
    from berth.models.project import ProjectSource

logger = structlog.get_logger()

# Global instance
_engine: Engine | None = None


async def prepull_images(driver: "Driver", images: list[str]) -> list[str]:
    """Pull configured images that are missing. Failures only warn.

    Returns:
        Images that were pulled
    """
    pulled = []
    for image in images:
        if await driver.image_exists(image):
            continue
        try:
            await driver.pull_image(image)
            pulled.append(image)
            logger.info("lifecycle.prepull.pulled", image=image)
        except ImagePullError as exc:
            logger.warning("lifecycle.prepull.failed", image=image, error=exc.message)
    return pulled


async def start_engine(
    driver: "Driver | None" = None,
    projects: "ProjectSource | None" = None,
    *,
    settings: Settings | None = None,
    setup_logging: bool = True,
) -> Engine:
    """Start the engine and register it as the global instance.

    Raises:
        RuntimeUnavailableError: If the container runtime does not answer
    """
    global _engine

    settings = settings or get_settings()
    if setup_logging:
        configure_logging(settings.logging.level, json_output=settings.logging.json_output)

    driver = driver or DockerCliDriver(settings.docker.binary)
    await driver.ping()
    logger.info("lifecycle.runtime_ready")

    await prepull_images(driver, list(settings.images.prepull))

    pool, _ = await init_warm_pool(driver, settings.warm_pool)
    engine = Engine(driver, projects, settings=settings, pool=pool)
    restored = await engine.sessions.load_snapshot()

    logger.info("lifecycle.started", restored_sessions=len(restored), warm_pool=pool is not None)
    _engine = engine
    return engine


async def stop_engine() -> None:
    """Stop background services. Sessions stay running for the next start."""
    global _engine

    await shutdown_warm_pool()
    if _engine is not None:
        await _engine.events.drain()
        _engine.store.persist()
        _engine = None
    logger.info("lifecycle.stopped")


def get_engine() -> Engine:
    """Get the global engine instance."""
    if _engine is None:
        raise RuntimeError("engine not started")
    return _engine
