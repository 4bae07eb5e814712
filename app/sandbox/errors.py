"""
Exception hierarchy for sandbox infrastructure failures.

A non-zero exit of the user's program is *not* an error: it travels through
the ordinary ``output`` + ``exit`` events.  Everything here means the
infrastructure failed, and the rendered message always names the backend
mode and the underlying cause so clients can tell the two apart.
"""

from __future__ import annotations


class SandboxError(Exception):
    """Base class for sandbox failures."""

    action = "Sandbox operation failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        mode: str = "unknown",
        cause: BaseException | str | None = None,
    ) -> None:
        self.mode = mode
        self.cause = cause
        self.detail = message or self.action
        super().__init__(self.render())

    def render(self) -> str:
        text = f"[{self.mode}] {self.detail}"
        if self.cause is not None:
            text += f": {self.cause}"
        return text


class ProvisioningError(SandboxError):
    """The sandbox could not be created."""

    action = "Failed to initialize sandbox"


class WriteError(SandboxError):
    """A file or the source could not be deposited into the sandbox."""

    action = "Failed to write files into sandbox"


class ReadError(SandboxError):
    """Result files could not be read back out of the sandbox."""

    action = "Failed to read files from sandbox"


class StartError(SandboxError):
    """The entry command could not be launched."""

    action = "Execution failed to start"


class SandboxLostError(SandboxError):
    """The sandbox is gone; the session must be torn down and re-initialized."""

    action = "Sandbox is no longer available"


class TransportError(SandboxError):
    """The client connection went away mid-run."""

    action = "Client disconnected"
