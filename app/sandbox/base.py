"""
Sandbox backend interface.

Two strategies implement it: containers (``DockerSandboxBackend``) and bare
host processes (``LocalSandboxBackend``).  One of them is chosen at startup
and every call site depends only on the abstractions below.
"""

from __future__ import annotations

import posixpath
from abc import ABC, abstractmethod
from typing import AsyncIterator, Sequence

from app.sandbox.models import BackendMode

# One multiplexed frame: exactly one side carries bytes.
Frame = tuple[bytes | None, bytes | None]


class ExecutionHandle(ABC):
    """A command running inside a sandbox."""

    @abstractmethod
    def frames(self) -> AsyncIterator[Frame]:
        """Yield ``(stdout, stderr)`` frames in arrival order until the output closes."""

    @abstractmethod
    async def wait(self) -> int:
        """Block until the command exits and return its exit code."""

    @abstractmethod
    async def kill(self) -> None:
        """Kill the running command, leaving the sandbox itself alive."""


class Sandbox(ABC):
    """One isolated environment bound to a session."""

    mode: BackendMode

    def __init__(self, sandbox_id: str, workspace: str) -> None:
        self.id = sandbox_id
        self.workspace = workspace
        self._destroyed = False

    @property
    def is_alive(self) -> bool:
        return not self._destroyed

    def path_for(self, filename: str) -> str:
        """Absolute path of ``filename`` inside the sandbox workspace."""
        name = posixpath.basename(filename.replace("\\", "/"))
        if not name or name in (".", ".."):
            raise ValueError(f"Invalid file name: {filename!r}")
        return posixpath.join(self.workspace, name)

    def prepare_command(self, command: str) -> str:
        """Adapt a built command to this sandbox (identity by default)."""
        return command

    def diagnostics(self, command: str) -> str | None:
        """Optional preamble emitted before the command runs."""
        return None

    async def ensure_alive(self) -> None:
        """Raise ``SandboxLostError`` when the backing resource is gone."""

    @abstractmethod
    async def write_file(self, path: str, data: bytes) -> None:
        ...

    @abstractmethod
    async def exec(self, command: str) -> ExecutionHandle:
        ...

    @abstractmethod
    async def read_files(self, filenames: Sequence[str]) -> dict[str, bytes]:
        """Return the contents of those ``filenames`` that exist in the workspace."""

    @abstractmethod
    async def remove_files(self, filenames: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def destroy(self) -> None:
        """Release the sandbox. Idempotent and never raises."""


class SandboxBackend(ABC):
    """Provisioning contract shared by both strategies."""

    mode: BackendMode

    @abstractmethod
    async def create(
        self,
        session_id: str,
        image: str,
        language: str | None = None,
    ) -> Sandbox:
        """Provision a new sandbox or raise ``ProvisioningError``."""

    async def cleanup_orphans(self) -> int:
        """Remove sandboxes left behind by a previous process."""
        return 0

    async def close(self) -> None:
        """Release backend-wide resources."""
