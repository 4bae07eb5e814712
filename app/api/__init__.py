"""API module."""

from .playground import router as playground_router
from .runtimes import router as runtimes_router
from .session import router as session_router

__all__ = ["playground_router", "runtimes_router", "session_router"]
