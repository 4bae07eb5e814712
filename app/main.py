"""
Code Playground Backend - Main Application Entry Point.

Runs user-submitted programs in per-session sandboxes and streams their
output back over a WebSocket.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import playground_router, runtimes_router, session_router
from app.config import get_settings
from app.models.schemas import HealthResponse
from app.sandbox.base import SandboxBackend
from app.services import playground_lifespan

settings = get_settings()

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer() if settings.environment == "production"
        else structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        10 if settings.debug else 20
    )
)

logger = structlog.get_logger()


def create_app(backend: SandboxBackend | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    ``backend`` bypasses startup backend selection (used by tests).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        async with playground_lifespan(app, backend=backend):
            yield

    app = FastAPI(
        title="Code Playground Backend",
        description="""
Execution backend for a browser-based code playground.

## Features

- **Sandboxed sessions**: one container (or local process workspace) per client
- **Streaming output**: stdout and stderr forwarded as they are produced
- **Result artifacts**: well-known result files such as `output.png` returned inline
- **Graceful fallback**: local processes when no container runtime is reachable

## Usage

1. Connect to `/ws`
2. Send `init-session`, wait for `session-ready`
3. Send `run-code` and consume `output` events until `exit`
4. Send `stop-session` or close the socket
        """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler."""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "code": "INTERNAL_ERROR",
                "details": str(exc) if settings.debug else None
            }
        )

    # Include routers
    app.include_router(playground_router)
    app.include_router(runtimes_router, prefix="/api/v1")
    app.include_router(session_router, prefix="/api/v1")

    # Health check endpoint
    @app.get("/health", tags=["health"], response_model=HealthResponse)
    async def health_check(request: Request) -> HealthResponse:
        """Health check endpoint."""
        manager = getattr(request.app.state, "session_manager", None)
        return HealthResponse(
            status="healthy",
            version=settings.app_version,
            environment=settings.environment,
            mode=manager.mode.value if manager else None,
            sessions=manager.registry.live_sandbox_count() if manager else 0
        )

    # Root endpoint
    @app.get("/", tags=["root"])
    async def root() -> dict:
        """Root endpoint with API information."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "websocket": "/ws",
            "docs": "/docs",
            "health": "/health"
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server.host,
        port=settings.server.port,
        workers=settings.server.workers,
        reload=settings.debug
    )


if __name__ == "__main__":
    main()
