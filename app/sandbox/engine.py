"""
Execution engine.

Drives one run through ``WRITING -> RUNNING -> DRAINING -> COMPLETED`` (or
``FAILED``):

  1. Deposit attached files, then the source file, into the sandbox
  2. Start the entry command
  3. Forward demultiplexed stdout/stderr chunks as they arrive while waiting
     for the process to finish (polling for containers, an OS exit callback
     for local processes; both hide behind ``ExecutionHandle.wait``)
  4. Surface result artifacts, then the exit code

Infrastructure failures are raised as ``SandboxError`` subclasses for the
session manager to report; the user's program failing is just a non-zero
exit code.
"""

from __future__ import annotations

import asyncio
import codecs
import time
from typing import TYPE_CHECKING, Awaitable, Callable

from structlog import get_logger

from app.sandbox.base import ExecutionHandle, Sandbox
from app.sandbox.codec import decode_b64
from app.sandbox.commands import build_command, source_filename
from app.sandbox.dependencies import detect_dependencies
from app.sandbox.errors import SandboxError, SandboxLostError, WriteError
from app.sandbox.extractor import ArtifactExtractor, artifact_to_event
from app.sandbox.models import (
    ExecutionOutcome,
    ExecutionRequest,
    ExecutionState,
    ExitEvent,
    OutputEvent,
    StreamName,
)

if TYPE_CHECKING:
    from app.config import SandboxConfig

logger = get_logger()

EXIT_COMMAND_NOT_FOUND = 127
EXIT_KILLED = 137


def _command_heads(request: ExecutionRequest, chained_install: bool) -> list[str]:
    """First word of the install (when chained) and entry commands, deduplicated."""
    commands = [request.entry_command]
    if chained_install and request.install_command:
        commands.insert(0, request.install_command)
    heads = [command.strip().split(" ", 1)[0] for command in commands]
    return list(dict.fromkeys(head for head in heads if head)) or [request.entry_command]


# Async callback receiving every event of a run, in order.
EmitFn = Callable[[OutputEvent | ExitEvent], Awaitable[None]]


class StreamDecoder:
    """Incremental UTF-8 decoding per stream, so split characters survive."""

    def __init__(self) -> None:
        self._decoders = {
            StreamName.STDOUT: codecs.getincrementaldecoder("utf-8")(errors="replace"),
            StreamName.STDERR: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }

    def decode(self, stream: StreamName, data: bytes) -> str:
        return self._decoders[stream].decode(data)

    def flush(self, stream: StreamName) -> str:
        return self._decoders[stream].decode(b"", final=True)


class ExecutionEngine:
    """
    Runs a single ``ExecutionRequest`` inside a sandbox.

    One instance per run; output events of one stream are emitted in the
    order the sandbox produced them.

    Usage::

        engine = ExecutionEngine(sandbox, emit, config)
        outcome = await engine.run(request)
    """

    def __init__(
        self,
        sandbox: Sandbox,
        emit: EmitFn,
        config: "SandboxConfig",
        extractor: ArtifactExtractor | None = None,
    ) -> None:
        self._sandbox = sandbox
        self._emit = emit
        self._config = config
        self._extractor = extractor or ArtifactExtractor()
        self.state = ExecutionState.PENDING
        # Programs the launched command line depends on, for 127 guidance.
        self._programs: list[str] = []

    @property
    def mode(self) -> str:
        return self._sandbox.mode.value

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, request: ExecutionRequest) -> ExecutionOutcome:
        start_time = time.monotonic()
        try:
            handle = await self._prepare_and_start(request)
        except SandboxError:
            self._transition(ExecutionState.FAILED)
            raise

        exit_code, timed_out = await self._drain(handle)
        self._transition(ExecutionState.COMPLETED)

        await self._emit_exit_diagnostics(request, exit_code, timed_out)
        artifacts = await self._emit_artifacts()
        await self._emit(ExitEvent(code=exit_code))

        outcome = ExecutionOutcome(
            state=self.state,
            exit_code=exit_code,
            timed_out=timed_out,
            artifacts=artifacts,
            execution_time=time.monotonic() - start_time,
        )
        logger.info(
            "Code execution finished",
            mode=self.mode,
            sandbox_id=self._sandbox.id,
            exit_code=exit_code,
            timed_out=timed_out,
            artifacts=artifacts,
            duration=f"{outcome.execution_time:.2f}s",
        )
        return outcome

    # ------------------------------------------------------------------
    # Writing / starting
    # ------------------------------------------------------------------

    async def _prepare_and_start(self, request: ExecutionRequest) -> ExecutionHandle:
        self._transition(ExecutionState.WRITING)
        await self._sandbox.ensure_alive()

        for attached in request.attached_files:
            try:
                path = self._sandbox.path_for(attached.name)
                data = decode_b64(attached.content_base64)
            except ValueError as exc:
                raise WriteError(
                    f"Invalid attached file {attached.name!r}", mode=self.mode, cause=exc
                ) from exc
            await self._sandbox.write_file(path, data)

        source_path = self._sandbox.path_for(source_filename(request.file_extension))
        dependencies: list[str] = []
        if request.install_command and self._config.install_dependencies:
            dependencies = detect_dependencies(request.source_code, request.language)

        built = build_command(
            request.entry_command,
            request.source_code,
            source_path,
            dependencies=dependencies,
            install_command=request.install_command,
            setup_code=request.setup_code,
        )
        await self._sandbox.write_file(source_path, built.source.encode("utf-8"))
        self._programs = _command_heads(request, chained_install=bool(dependencies))

        self._transition(ExecutionState.RUNNING)
        command = self._sandbox.prepare_command(built.command)
        preamble = self._sandbox.diagnostics(command)
        if preamble:
            await self._emit(OutputEvent(stream=StreamName.STDOUT, payload=preamble))

        logger.info(
            "Running command",
            mode=self.mode,
            sandbox_id=self._sandbox.id,
            command=command,
            dependencies=dependencies,
        )
        return await self._sandbox.exec(command)

    # ------------------------------------------------------------------
    # Draining / completion
    # ------------------------------------------------------------------

    async def _drain(self, handle: ExecutionHandle) -> tuple[int, bool]:
        """Forward output until the process exits; returns ``(exit_code, timed_out)``."""
        self._transition(ExecutionState.DRAINING)
        pump = asyncio.create_task(self._forward_output(handle))
        timeout = self._config.execution_timeout or None
        timed_out = False
        try:
            try:
                exit_code = await asyncio.wait_for(handle.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning("Execution timed out", sandbox_id=self._sandbox.id, timeout=timeout)
                await handle.kill()
                try:
                    exit_code = await asyncio.wait_for(
                        handle.wait(), timeout=self._config.kill_grace_period
                    )
                except asyncio.TimeoutError:
                    exit_code = EXIT_KILLED

            # Whatever is still buffered belongs to this run.
            try:
                await asyncio.wait_for(pump, timeout=self._config.kill_grace_period)
            except asyncio.TimeoutError:
                logger.warning("Output stream did not close after exit", sandbox_id=self._sandbox.id)
        except SandboxLostError:
            self._transition(ExecutionState.FAILED)
            raise
        finally:
            if not pump.done():
                pump.cancel()
                await asyncio.gather(pump, return_exceptions=True)

        return exit_code, timed_out

    async def _forward_output(self, handle: ExecutionHandle) -> None:
        decoder = StreamDecoder()
        try:
            async for stdout, stderr in handle.frames():
                if stdout:
                    await self._emit_text(StreamName.STDOUT, decoder.decode(StreamName.STDOUT, stdout))
                if stderr:
                    await self._emit_text(StreamName.STDERR, decoder.decode(StreamName.STDERR, stderr))
        except SandboxError:
            raise
        except Exception as exc:  # noqa: BLE001
            # The exit code is still authoritative; a broken stream only loses output.
            logger.warning("Output stream failed", sandbox_id=self._sandbox.id, error=str(exc))
        await self._emit_text(StreamName.STDOUT, decoder.flush(StreamName.STDOUT))
        await self._emit_text(StreamName.STDERR, decoder.flush(StreamName.STDERR))

    async def _emit_text(self, stream: StreamName, text: str) -> None:
        if text:
            await self._emit(OutputEvent(stream=stream, payload=text))

    # ------------------------------------------------------------------
    # Post-processing
    # ------------------------------------------------------------------

    async def _emit_exit_diagnostics(
        self, request: ExecutionRequest, exit_code: int, timed_out: bool
    ) -> None:
        if timed_out:
            message = (
                f"\n[{self.mode}] Execution timed out after "
                f"{self._config.execution_timeout:g}s; the process was killed.\n"
            )
        elif exit_code == EXIT_COMMAND_NOT_FOUND:
            programs = self._programs or _command_heads(request, chained_install=False)
            named = " or ".join(f"'{program}'" for program in programs)
            message = (
                f"\n[{self.mode}] Command not found (exit code 127): {named} is not "
                "available in this runtime. Check that the selected image provides the "
                "toolchain, or fix the entry command.\n"
            )
        elif exit_code == EXIT_KILLED:
            message = (
                f"\n[{self.mode}] Process was killed (exit code 137), most likely because it "
                f"exceeded the {self._config.memory_limit} memory limit.\n"
            )
        else:
            return
        await self._emit(OutputEvent(stream=StreamName.STDERR, payload=message))

    async def _emit_artifacts(self) -> list[str]:
        try:
            artifacts = await self._extractor.collect(self._sandbox)
        except SandboxLostError:
            raise
        except (SandboxError, OSError) as exc:
            logger.warning("Artifact extraction failed", sandbox_id=self._sandbox.id, error=str(exc))
            return []

        for artifact in artifacts:
            await self._emit(artifact_to_event(artifact))
        return [artifact.filename for artifact in artifacts]

    def _transition(self, state: ExecutionState) -> None:
        logger.debug("Execution state", sandbox_id=self._sandbox.id, state=state.value)
        self.state = state
