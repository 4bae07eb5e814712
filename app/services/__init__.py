"""Services module."""

from .playground_service import get_session_manager, playground_lifespan
from .registry import ClientSlot, EventChannel, SessionRegistry
from .session_manager import SessionManager

__all__ = [
    "get_session_manager",
    "playground_lifespan",
    "ClientSlot",
    "EventChannel",
    "SessionRegistry",
    "SessionManager",
]
