"""Startup-time choice between the container and local-process strategies."""

from __future__ import annotations

from structlog import get_logger

from app.config import SandboxConfig
from app.sandbox.base import SandboxBackend
from app.sandbox.docker_backend import DockerSandboxBackend
from app.sandbox.errors import ProvisioningError
from app.sandbox.local_backend import LocalSandboxBackend

logger = get_logger()


async def select_backend(config: SandboxConfig) -> SandboxBackend:
    """
    Probe the container runtime once and return the backend to use.

    ``backend="container"`` makes an unreachable runtime fatal, ``"local"``
    skips the probe, and ``"auto"`` falls back to local processes.
    """
    if config.backend != "local":
        try:
            backend = await DockerSandboxBackend.connect(config)
        except ProvisioningError as exc:
            if config.backend == "container":
                raise
            logger.warning(
                "Container runtime unreachable, falling back to local processes",
                error=str(exc),
            )
        else:
            logger.info("Sandbox backend selected", mode=backend.mode.value)
            return backend

    backend = LocalSandboxBackend(config)
    logger.info("Sandbox backend selected", mode=backend.mode.value)
    return backend
