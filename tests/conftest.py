"""
Shared fakes: an in-memory sandbox backend and a recording event channel.
"""

import asyncio
from typing import Callable, Sequence

import pytest

from app.config import SandboxConfig
from app.sandbox.base import ExecutionHandle, Sandbox, SandboxBackend
from app.sandbox.errors import ProvisioningError, SandboxLostError, TransportError
from app.sandbox.models import BackendMode
from app.services.registry import EventChannel


class FakeHandle(ExecutionHandle):
    """Replays canned frames; ``hang=True`` blocks until ``release()`` or ``kill()``."""

    def __init__(self, frames: Sequence = (), exit_code: int = 0, hang: bool = False, lost: bool = False):
        self._frames = list(frames)
        self.exit_code = exit_code
        self.hang = hang
        self.lost = lost
        self.killed = False
        self._done = asyncio.Event()

    async def frames(self):
        for frame in self._frames:
            yield frame
            await asyncio.sleep(0)
        if self.hang:
            await self._done.wait()

    async def wait(self) -> int:
        if self.lost:
            raise SandboxLostError(mode=BackendMode.CONTAINER.value, cause="container vanished")
        if self.hang:
            await self._done.wait()
        return self.exit_code

    async def kill(self) -> None:
        self.killed = True
        self.exit_code = 137
        self._done.set()

    def release(self, exit_code: int = 0) -> None:
        self.exit_code = exit_code
        self._done.set()


Script = Callable[["FakeSandbox", str], FakeHandle]


def default_script(sandbox: "FakeSandbox", command: str) -> FakeHandle:
    return FakeHandle(frames=[(b"hello\n", None)], exit_code=0)


class FakeSandbox(Sandbox):
    """In-memory sandbox; ``files`` is keyed by absolute path."""

    mode = BackendMode.CONTAINER

    def __init__(self, sandbox_id: str = "sbx-1", script: Script | None = None):
        super().__init__(sandbox_id=sandbox_id, workspace="/tmp")
        self.files: dict[str, bytes] = {}
        self.commands: list[str] = []
        self.handles: list[FakeHandle] = []
        self.script = script or default_script
        self.lost = False
        self.destroy_calls = 0

    async def ensure_alive(self) -> None:
        if self.lost:
            raise SandboxLostError(mode=self.mode.value, cause="container is exited")

    async def write_file(self, path: str, data: bytes) -> None:
        self.files[path] = data

    async def exec(self, command: str) -> FakeHandle:
        self.commands.append(command)
        handle = self.script(self, command)
        self.handles.append(handle)
        return handle

    async def read_files(self, filenames):
        return {
            name: self.files[self.path_for(name)]
            for name in filenames
            if self.path_for(name) in self.files
        }

    async def remove_files(self, filenames) -> None:
        for name in filenames:
            self.files.pop(self.path_for(name), None)

    async def destroy(self) -> None:
        self.destroy_calls += 1
        self._destroyed = True


class FakeBackend(SandboxBackend):
    """Hands out ``FakeSandbox`` instances and remembers all of them."""

    mode = BackendMode.CONTAINER

    def __init__(
        self,
        script: Script | None = None,
        fail: bool = False,
        create_gate: asyncio.Event | None = None,
    ):
        self.script = script
        self.fail = fail
        # When set, create() blocks on it like a slow image pull.
        self.create_gate = create_gate
        self.sandboxes: list[FakeSandbox] = []
        self.created_with: list[tuple[str, str, str | None]] = []
        self.orphan_sweeps = 0
        self.closed = False

    @property
    def live(self) -> list[FakeSandbox]:
        return [s for s in self.sandboxes if s.is_alive]

    async def create(self, session_id: str, image: str, language: str | None = None) -> FakeSandbox:
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.fail:
            raise ProvisioningError(mode=self.mode.value, cause=f"No such image: {image}")
        self.created_with.append((session_id, image, language))
        sandbox = FakeSandbox(f"sbx-{len(self.sandboxes) + 1}", script=self.script)
        self.sandboxes.append(sandbox)
        return sandbox

    async def cleanup_orphans(self) -> int:
        self.orphan_sweeps += 1
        return 0

    async def close(self) -> None:
        self.closed = True


class RecordingChannel(EventChannel):
    """Collects every event sent to a client."""

    def __init__(self):
        self.events: list[tuple[str, object]] = []
        self.closed = False

    async def send(self, event: str, data) -> None:
        if self.closed:
            raise TransportError(mode=BackendMode.CONTAINER.value, cause="socket closed")
        self.events.append((event, data))

    def named(self, event: str) -> list:
        return [data for name, data in self.events if name == event]


@pytest.fixture
def sandbox_config():
    return SandboxConfig(
        execution_timeout=5.0,
        kill_grace_period=0.5,
        poll_interval=0.01,
        local_diagnostics=False,
    )


@pytest.fixture
def channel():
    return RecordingChannel()
