"""Session registry and lifecycle."""

from berth.managers.session.session import SessionManager
from berth.managers.session.store import SessionStore

__all__ = ["SessionManager", "SessionStore"]
