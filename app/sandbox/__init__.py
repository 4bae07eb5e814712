"""Sandboxed code execution: container and local-process strategies."""

from app.sandbox.base import ExecutionHandle, Sandbox, SandboxBackend
from app.sandbox.engine import ExecutionEngine
from app.sandbox.errors import (
    ProvisioningError,
    SandboxError,
    SandboxLostError,
    StartError,
    TransportError,
    WriteError,
)
from app.sandbox.models import (
    AttachedFile,
    BackendMode,
    ExecutionOutcome,
    ExecutionRequest,
    ExitEvent,
    OutputEvent,
    Session,
    StreamName,
)
from app.sandbox.selection import select_backend

__all__ = [
    "ExecutionHandle",
    "Sandbox",
    "SandboxBackend",
    "ExecutionEngine",
    "ProvisioningError",
    "SandboxError",
    "SandboxLostError",
    "StartError",
    "TransportError",
    "WriteError",
    "AttachedFile",
    "BackendMode",
    "ExecutionOutcome",
    "ExecutionRequest",
    "ExitEvent",
    "OutputEvent",
    "Session",
    "StreamName",
    "select_backend",
]
