"""
Local-process sandbox strategy.

Fallback used when no container runtime is reachable at startup.  There is
no isolation: the program runs as a child of this server, inside a private
temporary directory, with the host's environment plus a few overrides that
keep plotting libraries headless.  The runtime image identifier is mapped to
an installed interpreter through a static lookup table.
"""

from __future__ import annotations

import asyncio
import os
import platform
import shlex
import shutil
import signal
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Sequence

from structlog import get_logger

from app.sandbox.base import ExecutionHandle, Frame, Sandbox, SandboxBackend
from app.sandbox.errors import ProvisioningError, SandboxLostError, StartError, WriteError
from app.sandbox.models import BackendMode

if TYPE_CHECKING:
    from app.config import SandboxConfig

logger = get_logger()

# Image substring -> interpreter binary.  Order matters: first match wins.
INTERPRETERS: tuple[tuple[str, str], ...] = (
    ("python", "python3"),
    ("node", "node"),
    ("golang", "go"),
    ("rust", "rustc"),
    ("ruby", "ruby"),
    ("php", "php"),
)

# Names a command may use for the same toolchain.  When the name used is not
# installed, the resolved interpreter is substituted.
INTERPRETER_FAMILIES: dict[str, frozenset[str]] = {
    "python3": frozenset({"python", "python3"}),
    "node": frozenset({"node", "nodejs"}),
    "go": frozenset({"go"}),
    "rustc": frozenset({"rustc"}),
    "ruby": frozenset({"ruby"}),
    "php": frozenset({"php"}),
}

HEADLESS_ENV: dict[str, str] = {
    "MPLBACKEND": "Agg",
    "QT_QPA_PLATFORM": "offscreen",
    "SDL_VIDEODRIVER": "dummy",
    "PYTHONUNBUFFERED": "1",
    "PYTHONIOENCODING": "utf-8",
}

_POSIX = os.name == "posix"


def resolve_interpreter(image: str | None) -> str | None:
    """Map a runtime image identifier to an interpreter binary name."""
    if not image:
        return None
    lowered = image.lower()
    for needle, binary in INTERPRETERS:
        if needle in lowered:
            return binary
    return None


class LocalExecution(ExecutionHandle):
    """A child process; its exit is reported directly by the OS."""

    def __init__(self, process: asyncio.subprocess.Process, chunk_size: int) -> None:
        self.process = process
        # With start_new_session the shell leads its own group; background
        # children stay in it after the shell exits.
        self.pgid = process.pid if _POSIX else None
        self._chunk_size = chunk_size

    async def frames(self) -> AsyncIterator[Frame]:
        queue: asyncio.Queue[Frame | None] = asyncio.Queue()

        async def _pump(reader: asyncio.StreamReader | None, is_stderr: bool) -> None:
            try:
                while reader is not None:
                    chunk = await reader.read(self._chunk_size)
                    if not chunk:
                        break
                    await queue.put((None, chunk) if is_stderr else (chunk, None))
            finally:
                await queue.put(None)

        pumps = [
            asyncio.create_task(_pump(self.process.stdout, False)),
            asyncio.create_task(_pump(self.process.stderr, True)),
        ]
        open_streams = len(pumps)
        try:
            while open_streams:
                frame = await queue.get()
                if frame is None:
                    open_streams -= 1
                    continue
                yield frame
        finally:
            for pump in pumps:
                pump.cancel()

    async def wait(self) -> int:
        returncode = await self.process.wait()
        # Report signal deaths the way a shell does (SIGKILL -> 137).
        return 128 - returncode if returncode < 0 else returncode

    async def kill(self) -> None:
        """SIGKILL the whole process group, even if the shell itself has exited."""
        try:
            if self.pgid is not None:
                os.killpg(self.pgid, signal.SIGKILL)
            elif self.process.returncode is None:
                self.process.kill()
        except (ProcessLookupError, PermissionError):
            pass


class LocalSandbox(Sandbox):
    """A private temp directory on the host plus the processes run in it."""

    mode = BackendMode.LOCAL

    def __init__(
        self,
        sandbox_id: str,
        workspace: Path,
        interpreter: str | None,
        config: "SandboxConfig",
    ) -> None:
        super().__init__(sandbox_id=sandbox_id, workspace=str(workspace))
        self.root = workspace
        self.interpreter = interpreter
        self._config = config
        self._executions: set[LocalExecution] = set()

    def path_for(self, filename: str) -> str:
        name = Path(filename.replace("\\", "/")).name
        if not name or name in (".", ".."):
            raise ValueError(f"Invalid file name: {filename!r}")
        return str(self.root / name)

    def prepare_command(self, command: str) -> str:
        """Swap a generic interpreter name for the resolved local binary.

        ``python`` on a host that only has ``python3`` (or ``nodejs`` where only
        ``node`` exists) is rewritten to the interpreter picked for the image.
        """
        if not self.interpreter:
            return command
        head, _, rest = command.partition(" ")
        if head not in INTERPRETER_FAMILIES.get(self.interpreter, frozenset({self.interpreter})):
            return command
        if head != self.interpreter and shutil.which(head):
            return command
        resolved = shutil.which(self.interpreter)
        if not resolved:
            return command
        return f"{shlex.quote(resolved)} {rest}".rstrip()

    def diagnostics(self, command: str) -> str | None:
        if not self._config.local_diagnostics:
            return None
        candidates = ", ".join(
            f"{binary}={'yes' if shutil.which(binary) else 'no'}"
            for binary in dict.fromkeys(binary for _, binary in INTERPRETERS)
        )
        lines = [
            f"[Local] platform: {platform.system()} {platform.release()} ({platform.machine()})",
            f"[Local] PATH: {os.environ.get('PATH', '')}",
            f"[Local] interpreters: {candidates}",
            f"[Local] command: {command}",
        ]
        return "\n".join(lines) + "\n"

    def environment(self) -> dict[str, str]:
        env = os.environ.copy()
        env.pop("DISPLAY", None)
        env.update(HEADLESS_ENV)
        return env

    async def ensure_alive(self) -> None:
        if self._destroyed or not self.root.is_dir():
            raise SandboxLostError(mode=self.mode.value, cause="workspace directory is gone")

    async def exec(self, command: str) -> LocalExecution:
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(self.root),
                env=self.environment(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=_POSIX,
            )
        except OSError as exc:
            raise StartError(mode=self.mode.value, cause=exc) from exc

        execution = LocalExecution(process, self._config.max_output_chunk)
        self._executions.add(execution)
        logger.debug("Local process started", sandbox_id=self.id, pid=process.pid)
        return execution

    async def write_file(self, path: str, data: bytes) -> None:
        target = Path(path).resolve()
        root = self.root.resolve()
        if target.parent != root:
            raise WriteError(f"Refusing to write outside the workspace: {path}", mode=self.mode.value)
        try:
            await asyncio.to_thread(target.write_bytes, data)
        except OSError as exc:
            raise WriteError(f"Failed to write {path}", mode=self.mode.value, cause=exc) from exc

    async def read_files(self, filenames: Sequence[str]) -> dict[str, bytes]:
        found: dict[str, bytes] = {}
        for name in filenames:
            path = Path(self.path_for(name))
            if path.is_file():
                found[name] = await asyncio.to_thread(path.read_bytes)
        return found

    async def remove_files(self, filenames: Sequence[str]) -> None:
        for name in filenames:
            Path(self.path_for(name)).unlink(missing_ok=True)

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        for execution in list(self._executions):
            await execution.kill()
        self._executions.clear()
        await asyncio.to_thread(shutil.rmtree, self.root, True)
        logger.info("Local sandbox destroyed", sandbox_id=self.id)


class LocalSandboxBackend(SandboxBackend):
    """Runs submissions as plain host processes."""

    mode = BackendMode.LOCAL

    def __init__(self, config: "SandboxConfig", base_dir: str | None = None) -> None:
        self._config = config
        self._base_dir = base_dir

    async def create(
        self,
        session_id: str,
        image: str,
        language: str | None = None,
    ) -> LocalSandbox:
        try:
            workspace = Path(
                await asyncio.to_thread(
                    tempfile.mkdtemp, prefix=f"playground-{session_id[:8]}-", dir=self._base_dir
                )
            )
        except OSError as exc:
            raise ProvisioningError(mode=self.mode.value, cause=exc) from exc

        interpreter = resolve_interpreter(image)
        logger.info(
            "Local sandbox created",
            session_id=session_id,
            workspace=str(workspace),
            image=image,
            interpreter=interpreter,
        )
        return LocalSandbox(
            sandbox_id=workspace.name,
            workspace=workspace,
            interpreter=interpreter,
            config=self._config,
        )
