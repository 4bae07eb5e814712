"""Data models for the code execution sandbox."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.sandbox.base import Sandbox


class BackendMode(str, Enum):
    """Which sandbox strategy is serving a session."""

    CONTAINER = "Container"
    LOCAL = "Local"


class StreamName(str, Enum):
    """Origin stream of an output chunk."""

    STDOUT = "stdout"
    STDERR = "stderr"


class ExecutionState(str, Enum):
    """States of one execution engine run."""

    PENDING = "pending"
    WRITING = "writing"
    RUNNING = "running"
    DRAINING = "draining"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class AttachedFile:
    """A client-side file deposited into the sandbox next to the source."""

    name: str
    content_base64: str


@dataclass
class ExecutionRequest:
    """Request to run a piece of source code in a session's sandbox."""

    source_code: str
    file_extension: str
    entry_command: str
    install_command: str | None = None
    setup_code: str | None = None
    attached_files: list[AttachedFile] = field(default_factory=list)
    language: str | None = None


@dataclass(frozen=True)
class OutputEvent:
    """A chunk of program output (or an artifact) tagged by stream."""

    stream: StreamName
    payload: str


@dataclass(frozen=True)
class ExitEvent:
    """Terminal event of a run."""

    code: int


@dataclass(frozen=True)
class ResultArtifact:
    """A well-known result file produced by the user's program."""

    filename: str
    mime_kind: str
    is_binary: bool
    payload: bytes


@dataclass
class ExecutionOutcome:
    """Summary of a finished run, returned by the execution engine."""

    state: ExecutionState
    exit_code: int | None = None
    timed_out: bool = False
    artifacts: list[str] = field(default_factory=list)
    execution_time: float = 0.0


@dataclass
class Session:
    """
    Binding between one client connection and its sandbox.

    ``sandbox`` is only set while the backing resource is alive.
    """

    id: str
    backend_kind: BackendMode
    language: str | None = None
    image: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sandbox: Sandbox | None = None

    @property
    def has_sandbox(self) -> bool:
        return self.sandbox is not None and self.sandbox.is_alive

