"""
Playground service for dependency injection and lifecycle management.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from starlette.requests import HTTPConnection
from structlog import get_logger

from app.config import get_settings
from app.sandbox.base import SandboxBackend
from app.sandbox.selection import select_backend
from app.services.session_manager import SessionManager

logger = get_logger()


def get_session_manager(connection: HTTPConnection) -> SessionManager:
    """Get the session manager for dependency injection."""
    manager = getattr(connection.app.state, "session_manager", None)
    if manager is None:
        raise RuntimeError("Session manager not initialized. Use playground_lifespan.")
    return manager


@asynccontextmanager
async def playground_lifespan(
    app: FastAPI,
    backend: SandboxBackend | None = None,
) -> AsyncGenerator[SessionManager, None]:
    """Select the sandbox backend and own the session manager for the app's lifetime."""
    settings = get_settings()

    logger.info("Initializing playground backend...")
    if backend is None:
        backend = await select_backend(settings.sandbox)

    removed = await backend.cleanup_orphans()
    if removed:
        logger.warning("Removed orphaned sandboxes from a previous run", count=removed)

    manager = SessionManager(backend, config=settings.sandbox)
    app.state.session_manager = manager
    logger.info("Playground backend started", mode=backend.mode.value)

    try:
        yield manager
    finally:
        logger.info("Shutting down playground backend...")
        await manager.shutdown()
        await backend.cleanup_orphans()
        await backend.close()
        app.state.session_manager = None
        logger.info("Playground backend stopped")
