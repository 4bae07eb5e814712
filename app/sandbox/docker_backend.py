"""
Container sandbox strategy.

Each session gets one long-lived container kept alive by a no-op foreground
loop, so repeated runs reuse it instead of re-provisioning.  The container is
created with a memory ceiling, a CPU quota, a pids limit and (unless
dependency installation is enabled) no network, and removes itself when
stopped.

There is no shared volume with the container: files go in through base64
shell redirection over exec, output comes back as Docker's multiplexed
stdout/stderr stream, and completion is detected by polling the exec
instance.

Short Docker SDK calls are synchronous and wrapped with ``asyncio.to_thread``
to keep the event loop responsive.  An exec output stream blocks for as long
as the program runs, so each one is drained on its own reader thread instead
of occupying a worker of the shared executor.
"""

from __future__ import annotations

import asyncio
import io
import tarfile
import threading
from typing import TYPE_CHECKING, Any, AsyncIterator, Sequence

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from structlog import get_logger

from app.sandbox.base import ExecutionHandle, Frame, Sandbox, SandboxBackend
from app.sandbox.codec import build_write_commands
from app.sandbox.errors import (
    ProvisioningError,
    ReadError,
    SandboxError,
    SandboxLostError,
    StartError,
    WriteError,
)
from app.sandbox.extractor import build_extraction_script, parse_extraction_output
from app.sandbox.models import BackendMode

if TYPE_CHECKING:
    from app.config import SandboxConfig

logger = get_logger()

KEEP_ALIVE_COMMAND = ["/bin/sh", "-c", "while true; do sleep 1000; done"]

# Kills every process except PID 1 (the keep-alive loop) and the caller.
KILL_ALL_COMMAND = ["/bin/sh", "-c", "kill -9 -1 2>/dev/null; true"]

_EOF = object()


class ContainerExecution(ExecutionHandle):
    """An exec instance inside a container."""

    def __init__(
        self,
        sandbox: "DockerSandbox",
        exec_id: str,
        stream: Any,
        poll_interval: float,
    ) -> None:
        self._sandbox = sandbox
        self._api = sandbox.container.client.api
        self.exec_id = exec_id
        self._stream = stream
        self._poll_interval = poll_interval

    async def frames(self) -> AsyncIterator[Frame]:
        # docker-py already splits the multiplexed framing into (stdout, stderr)
        # pairs when started with ``demux=True``.
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Any] = asyncio.Queue()

        def _push(item: Any) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # Event loop already closed; nobody is listening any more.
                pass

        def _drain() -> None:
            try:
                for frame in self._stream:
                    _push(frame)
            except Exception as exc:  # noqa: BLE001
                _push(exc)
            finally:
                _push(_EOF)

        reader = threading.Thread(
            target=_drain,
            name=f"exec-reader-{self.exec_id[:12]}",
            daemon=True,
        )
        reader.start()

        while True:
            item = await queue.get()
            if item is _EOF:
                return
            if isinstance(item, Exception):
                raise item
            stdout, stderr = item
            if stdout or stderr:
                yield stdout, stderr

    async def wait(self) -> int:
        """Poll the exec instance until it stops running."""
        while True:
            try:
                info = await asyncio.to_thread(self._api.exec_inspect, self.exec_id)
            except NotFound as exc:
                raise SandboxLostError(mode=BackendMode.CONTAINER.value, cause=exc) from exc
            if not info.get("Running"):
                exit_code = info.get("ExitCode")
                return -1 if exit_code is None else int(exit_code)
            await asyncio.sleep(self._poll_interval)

    async def kill(self) -> None:
        try:
            await asyncio.to_thread(self._sandbox.container.exec_run, KILL_ALL_COMMAND)
        except DockerException as exc:
            logger.warning("Failed to kill exec", exec_id=self.exec_id, error=str(exc))


class DockerSandbox(Sandbox):
    """A long-lived container bound to one session."""

    mode = BackendMode.CONTAINER

    def __init__(self, container: Any, config: "SandboxConfig") -> None:
        super().__init__(sandbox_id=container.id, workspace=config.workspace_dir)
        self.container = container
        self._config = config

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def ensure_alive(self) -> None:
        if self._destroyed:
            raise SandboxLostError(mode=self.mode.value, cause="sandbox was destroyed")
        try:
            await asyncio.to_thread(self.container.reload)
        except NotFound as exc:
            self._destroyed = True
            raise SandboxLostError(mode=self.mode.value, cause=exc) from exc
        if self.container.status != "running":
            self._destroyed = True
            raise SandboxLostError(
                mode=self.mode.value,
                cause=f"container is {self.container.status}",
            )

    async def exec(self, command: str) -> ContainerExecution:
        api = self.container.client.api

        def _start() -> tuple[str, Any]:
            created = api.exec_create(
                self.container.id,
                ["/bin/sh", "-c", command],
                stdout=True,
                stderr=True,
                workdir=self.workspace,
            )
            stream = api.exec_start(created["Id"], stream=True, demux=True)
            return created["Id"], stream

        try:
            exec_id, stream = await asyncio.to_thread(_start)
        except NotFound as exc:
            raise SandboxLostError(mode=self.mode.value, cause=exc) from exc
        except DockerException as exc:
            raise StartError(mode=self.mode.value, cause=exc) from exc

        logger.debug("Exec started", container=self.id[:12], exec_id=exec_id)
        return ContainerExecution(self, exec_id, stream, self._config.poll_interval)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def write_file(self, path: str, data: bytes) -> None:
        for command in build_write_commands(path, data):
            exit_code, output = await self._run(["/bin/sh", "-c", command], WriteError)
            if exit_code != 0:
                detail = output.decode("utf-8", errors="replace").strip()
                raise WriteError(
                    f"Failed to write {path}",
                    mode=self.mode.value,
                    cause=detail or f"exit code {exit_code}",
                )

    async def read_files(self, filenames: Sequence[str]) -> dict[str, bytes]:
        if self._config.artifact_retrieval == "script":
            return await self._read_files_by_script(filenames)

        found: dict[str, bytes] = {}
        for name in filenames:
            data = await asyncio.to_thread(self._get_archive_member, self.path_for(name))
            if data is not None:
                found[name] = data
        return found

    async def remove_files(self, filenames: Sequence[str]) -> None:
        paths = [self.path_for(name) for name in filenames]
        if paths:
            await self._run(["rm", "-f", "--", *paths], WriteError)

    def _get_archive_member(self, path: str) -> bytes | None:
        try:
            bits, _ = self.container.get_archive(path)
            buffer = io.BytesIO()
            for chunk in bits:
                buffer.write(chunk)
        except NotFound as exc:
            if "no such container" in str(exc).lower():
                raise SandboxLostError(mode=self.mode.value, cause=exc) from exc
            return None
        except DockerException as exc:
            raise ReadError(f"Failed to read {path}", mode=self.mode.value, cause=exc) from exc

        buffer.seek(0)
        try:
            with tarfile.open(fileobj=buffer, mode="r") as tar:
                for member in tar.getmembers():
                    if member.isfile():
                        extracted = tar.extractfile(member)
                        return extracted.read() if extracted else b""
        except tarfile.TarError as exc:
            raise ReadError(f"Failed to read {path}", mode=self.mode.value, cause=exc) from exc
        return None

    async def _read_files_by_script(self, filenames: Sequence[str]) -> dict[str, bytes]:
        script = build_extraction_script([self.path_for(name) for name in filenames])
        _, output = await self._run(["/bin/sh", "-c", script], ReadError)
        found = parse_extraction_output(output.decode("ascii", errors="replace"))
        return {name: found[name] for name in filenames if name in found}

    async def _run(self, cmd: list[str], error: type[SandboxError]) -> tuple[int, bytes]:
        try:
            result = await asyncio.to_thread(
                self.container.exec_run, cmd, workdir=self.workspace
            )
        except NotFound as exc:
            raise SandboxLostError(mode=self.mode.value, cause=exc) from exc
        except DockerException as exc:
            raise error(mode=self.mode.value, cause=exc) from exc
        return result.exit_code, result.output or b""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        try:
            # AutoRemove is set, so stopping also deletes the container.
            await asyncio.to_thread(self.container.stop, timeout=1)
            logger.info("Container stopped", container=self.id[:12])
        except NotFound:
            logger.debug("Container already gone", container=self.id[:12])
        except DockerException as exc:
            logger.warning("Container stop failed, forcing removal", container=self.id[:12], error=str(exc))
            try:
                await asyncio.to_thread(self.container.remove, force=True)
            except DockerException as remove_exc:
                logger.warning("Cleanup warning", container=self.id[:12], error=str(remove_exc))


class DockerSandboxBackend(SandboxBackend):
    """Provisions one container per session through the Docker daemon."""

    mode = BackendMode.CONTAINER

    def __init__(self, config: "SandboxConfig", client: docker.DockerClient) -> None:
        self._config = config
        self._client = client

    @classmethod
    async def connect(cls, config: "SandboxConfig") -> "DockerSandboxBackend":
        """Connect to the Docker daemon; raises ``ProvisioningError`` if unreachable."""
        try:
            client = await asyncio.to_thread(docker.from_env)
            await asyncio.to_thread(client.ping)
        except DockerException as exc:
            raise ProvisioningError(
                "Container runtime is not reachable",
                mode=BackendMode.CONTAINER.value,
                cause=exc,
            ) from exc
        logger.info("Docker daemon connected")
        return cls(config, client)

    @property
    def network_mode(self) -> str:
        if self._config.install_dependencies:
            return "bridge"
        return self._config.network_mode

    async def create(
        self,
        session_id: str,
        image: str,
        language: str | None = None,
    ) -> DockerSandbox:
        try:
            container = await asyncio.to_thread(self._create_container, session_id, image)
            await asyncio.to_thread(container.start)
        except DockerException as exc:
            logger.error("Sandbox provisioning failed", image=image, error=str(exc))
            raise ProvisioningError(mode=self.mode.value, cause=exc) from exc

        logger.info(
            "Container started",
            session_id=session_id,
            container=container.id[:12],
            image=image,
            language=language,
        )
        return DockerSandbox(container, self._config)

    def _create_container(self, session_id: str, image: str) -> Any:
        kwargs = dict(
            image=image,
            command=KEEP_ALIVE_COMMAND,
            detach=True,
            tty=False,
            stdin_open=True,
            working_dir=self._config.workspace_dir,
            labels={self._config.container_label: session_id},
            # Resource limits
            mem_limit=self._config.memory_limit,
            cpu_period=self._config.cpu_period,
            cpu_quota=self._config.cpu_quota,
            pids_limit=self._config.pids_limit,
            # Network isolation
            network_mode=self.network_mode,
            # Removed by the daemon as soon as it stops
            auto_remove=True,
            security_opt=["no-new-privileges"],
        )
        try:
            return self._client.containers.create(**kwargs)
        except ImageNotFound:
            if not self._config.pull_missing_images:
                raise
            logger.info("Sandbox image not found, pulling", image=image)
            self._client.images.pull(image)
            return self._client.containers.create(**kwargs)

    async def cleanup_orphans(self) -> int:
        def _sweep() -> int:
            removed = 0
            containers = self._client.containers.list(
                all=True, filters={"label": self._config.container_label}
            )
            for container in containers:
                try:
                    container.remove(force=True)
                    removed += 1
                except (NotFound, APIError) as exc:
                    logger.warning("Could not remove orphan", container=container.id[:12], error=str(exc))
            return removed

        try:
            removed = await asyncio.to_thread(_sweep)
        except DockerException as exc:
            logger.warning("Orphan sweep failed", error=str(exc))
            return 0
        if removed:
            logger.info("Removed orphaned sandbox containers", count=removed)
        return removed

    async def close(self) -> None:
        await asyncio.to_thread(self._client.close)
        logger.info("Docker sandbox backend shut down")
