"""Lightweight asyncio event bus for session lifecycle notifications."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

import structlog

from berth.utils.datetime import utcnow

logger = structlog.get_logger()


# --- Event types ---


@dataclass
class ContainerReady:
    """A session's primary container was created and verified running."""

    terminal_id: str
    container_name: str
    image: str
    port: int | None = None


@dataclass
class ContainerRestarted:
    """Recovery replaced a dead container under the same terminal id."""

    terminal_id: str
    old_container_name: str | None
    new_container_name: str | None


@dataclass
class CommandCompleted:
    terminal_id: str
    command: str
    exit_code: int
    working_directory: str


@dataclass
class WebServerReady:
    terminal_id: str
    container_name: str
    url: str
    port: int


@dataclass
class RecoveryOccurred:
    """Surfaced to the caller instead of an error when a container vanished."""

    terminal_id: str
    reason: str
    occurred_at: str = field(default_factory=lambda: utcnow().isoformat())


@dataclass
class FileTreeChanged:
    terminal_id: str | None
    project_name: str
    paths: list[str] = field(default_factory=list)


Event = Union[
    ContainerReady,
    ContainerRestarted,
    CommandCompleted,
    WebServerReady,
    RecoveryOccurred,
    FileTreeChanged,
]
Listener = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    """Fire-and-forget async event dispatcher."""

    def __init__(self) -> None:
        self._listeners: defaultdict[type, list[Listener]] = defaultdict(list)
        self._pending: set[asyncio.Future] = set()

    def subscribe(self, event_type: type, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event type. Returns an unsubscribe function."""
        self._listeners[event_type].append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners[event_type].remove(listener)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        """Emit an event to all subscribers. Non-blocking, fire-and-forget."""
        logger.debug("event.emit", event_type=type(event).__name__)
        for listener in list(self._listeners[type(event)]):
            future = asyncio.ensure_future(_safe_call(listener, event))
            self._pending.add(future)
            future.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait until every listener call emitted so far has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending))


async def _safe_call(listener: Listener, event: Event) -> None:
    try:
        result = listener(event)
        if inspect.isawaitable(result):
            await result
    except Exception as exc:
        logger.warning("event.listener_error", event_type=type(event).__name__, error=str(exc))
