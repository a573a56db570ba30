"""Container and volume naming policy."""

from __future__ import annotations

import re
import threading

import structlog

from berth.drivers.base import Driver
from berth.utils.datetime import now_ms

logger = structlog.get_logger()

NAME_PREFIX = "berth"
VOLUME_PREFIX = "berth-vol"

_OWNER_MAX = 16
_PROJECT_MAX = 40
_TERMINAL_TAIL = 8
_MAX_SUFFIX = 5

_UNSAFE = re.compile(r"[^a-z0-9]+")


def slugify(value: str, limit: int | None = None) -> str:
    slug = _UNSAFE.sub("-", value.lower()).strip("-")
    if limit is not None:
        slug = slug[:limit].strip("-")
    return slug or "x"


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out or "0"


class _MonotonicMillis:
    """Millisecond timestamps that never repeat within this process."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            value = max(now_ms(), self._last + 1)
            self._last = value
            return value


_clock = _MonotonicMillis()


def next_timestamp_ms() -> int:
    return _clock.next()


def container_base_name(owner_id: str, project_name: str, terminal_id: str) -> str:
    """Deterministic name for a terminal's primary container."""
    owner = slugify(owner_id, _OWNER_MAX)
    project = slugify(project_name, _PROJECT_MAX)
    terminal = slugify(terminal_id)[-_TERMINAL_TAIL:].strip("-") or "x"
    return f"{NAME_PREFIX}-{owner}-{project}-{terminal}"


def volume_name(owner_id: str, project_name: str, terminal_id: str) -> str:
    base = container_base_name(owner_id, project_name, terminal_id)[len(NAME_PREFIX) + 1 :]
    return f"{VOLUME_PREFIX}-{base}-{_base36(next_timestamp_ms())}"


def web_container_prefix(container_name: str) -> str:
    return f"{container_name}-web"


def web_container_name(container_name: str) -> str:
    return f"{web_container_prefix(container_name)}-{next_timestamp_ms()}"


def warm_container_name() -> str:
    stamp = _base36(next_timestamp_ms())
    return f"{NAME_PREFIX}-warm-{stamp}"


async def resolve_unique_name(driver: Driver, base: str) -> str:
    """Return ``base`` or the first free ``base-N``; falls back to a timestamp."""
    if not await driver.exists(base):
        return base
    for suffix in range(1, _MAX_SUFFIX + 1):
        candidate = f"{base}-{suffix}"
        if not await driver.exists(candidate):
            return candidate
    fallback = f"{base}-{now_ms()}"
    logger.debug("naming.timestamp_fallback", base=base, name=fallback)
    return fallback
