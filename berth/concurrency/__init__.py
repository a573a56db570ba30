"""Concurrency primitives."""

from berth.concurrency.locks import cleanup_session_lock, get_session_lock

__all__ = ["cleanup_session_lock", "get_session_lock"]
