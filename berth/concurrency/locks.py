"""Per-session asyncio locks.

Each terminal has one lock per scope: ``command`` serializes command
execution (and the recovery it may trigger), ``web`` serializes preview
provisioning. Unrelated terminals never wait on each other.
"""

from __future__ import annotations

import asyncio

COMMAND_SCOPE = "command"
WEB_SCOPE = "web"

_session_locks: dict[tuple[str, str], asyncio.Lock] = {}


def get_session_lock(terminal_id: str, scope: str = COMMAND_SCOPE) -> asyncio.Lock:
    """Get (or lazily create) the lock guarding one scope of a terminal."""
    key = (scope, terminal_id)
    lock = _session_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _session_locks[key] = lock
    return lock


def cleanup_session_lock(terminal_id: str) -> None:
    """Drop a closed terminal's locks unless someone still holds them."""
    for key in [k for k in _session_locks if k[1] == terminal_id]:
        if not _session_locks[key].locked():
            del _session_locks[key]


def reset_session_locks() -> None:
    _session_locks.clear()
