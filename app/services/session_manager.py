"""
Session manager.

Orchestrates the lifecycle of a playground client:

    connect -> init-session -> run-code* -> stop-session / disconnect

It owns the ``SessionRegistry`` and a ``SandboxBackend``, keeps at most one
live sandbox per client, and turns engine events into wire events
(``session-ready``, ``output``, ``exit``, ``error``).

Overlapping ``run-code`` requests on one session never get a second sandbox:
with the ``queue`` policy they wait for the current run and reuse the same
sandbox; with ``reject`` they are answered with an ``error``.
"""

from __future__ import annotations

import asyncio
from typing import Any

from structlog import get_logger

from app.config import SandboxConfig, get_settings
from app.sandbox.base import SandboxBackend
from app.sandbox.engine import ExecutionEngine
from app.sandbox.errors import (
    ProvisioningError,
    SandboxError,
    SandboxLostError,
    TransportError,
)
from app.sandbox.extractor import ArtifactExtractor
from app.sandbox.models import (
    BackendMode,
    ExecutionOutcome,
    ExecutionRequest,
    ExitEvent,
    OutputEvent,
    Session,
)
from app.sandbox.runtimes import get_runtime
from app.services.registry import ClientSlot, EventChannel, SessionRegistry

logger = get_logger()


class SessionManager:
    """
    Binds client connections to sandboxes.

    Usage::

        manager = SessionManager(backend)
        await manager.connect(client_id, channel)
        manager.request_init(client_id, "python", "python:3.11-slim")
        manager.run_code(client_id, request)
        await manager.disconnect(client_id)
    """

    def __init__(
        self,
        backend: SandboxBackend,
        config: SandboxConfig | None = None,
        registry: SessionRegistry | None = None,
        extractor: ArtifactExtractor | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or get_settings().sandbox
        self._registry = registry or SessionRegistry()
        self._extractor = extractor or ArtifactExtractor()
        # Destroys of sandboxes whose init was abandoned mid-create.
        self._cleanup_tasks: set[asyncio.Task] = set()

    @property
    def mode(self) -> BackendMode:
        return self._backend.mode

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, client_id: str, channel: EventChannel) -> None:
        self._registry.register(client_id, channel)
        logger.info("Client connected", client_id=client_id)

    async def disconnect(self, client_id: str) -> None:
        """Tear everything down for a client; safe to call repeatedly."""
        slot = self._registry.get(client_id)
        if slot is None:
            return
        # No event may reach the client after this point.
        slot.closed = True
        await self._cancel_init(slot)
        async with slot.lifecycle_lock:
            await self._teardown(slot, reason="disconnect")
            slot.session = None
        self._registry.remove(client_id)
        logger.info("Client disconnected", client_id=client_id)

    async def shutdown(self) -> None:
        for slot in self._registry:
            await self.disconnect(slot.client_id)
        if self._cleanup_tasks:
            await asyncio.gather(*self._cleanup_tasks, return_exceptions=True)
        logger.info("Session manager shut down")

    # ------------------------------------------------------------------
    # Protocol operations
    # ------------------------------------------------------------------

    def request_init(
        self,
        client_id: str,
        language: str,
        image: str | None = None,
    ) -> asyncio.Task | None:
        """Start ``init_session`` in the background, superseding a pending one.

        Provisioning may pull an image for minutes; a ``stop-session`` or a
        disconnect arriving meanwhile cancels it instead of queueing behind it.
        """
        slot = self._registry.get(client_id)
        if slot is None or slot.closed:
            return None
        if slot.init_task is not None and not slot.init_task.done():
            slot.init_task.cancel()
        task = asyncio.create_task(self.init_session(client_id, language, image))
        slot.init_task = task
        return task

    async def init_session(
        self,
        client_id: str,
        language: str,
        image: str | None = None,
    ) -> Session | None:
        """Replace any existing sandbox with a fresh one and announce it."""
        slot = self._registry.get(client_id)
        if slot is None:
            logger.warning("init-session for unknown client", client_id=client_id)
            return None

        profile = get_runtime(language)
        image = image or (profile.image if profile else None)
        if not image:
            await self._send(slot, "error", f"[{self.mode.value}] No runtime image known for language '{language}'")
            return None

        async with slot.lifecycle_lock:
            await self._teardown(slot, reason="re-init")
            if slot.closed:
                return None

            logger.info("Initializing session", client_id=client_id, language=language, image=image)
            create = asyncio.ensure_future(
                self._backend.create(session_id=client_id, image=image, language=language)
            )
            try:
                # Shielded so a cancelled init can still destroy what it created.
                sandbox = await asyncio.shield(create)
            except asyncio.CancelledError:
                logger.info("Session init cancelled", client_id=client_id, image=image)
                create.add_done_callback(self._destroy_abandoned)
                raise
            except ProvisioningError as exc:
                logger.error("Session init failed", client_id=client_id, error=str(exc))
                await self._send(slot, "error", str(exc))
                return None

            session = Session(
                id=client_id,
                backend_kind=self.mode,
                language=language,
                image=image,
                sandbox=sandbox,
            )
            slot.session = session

        await self._send(slot, "session-ready", {"mode": self.mode.value, "sandbox_id": sandbox.id})
        return session

    def run_code(self, client_id: str, request: ExecutionRequest) -> asyncio.Task | None:
        """Schedule a run without blocking the caller's receive loop."""
        slot = self._registry.get(client_id)
        if slot is None or slot.closed:
            return None
        task = asyncio.create_task(self.execute(client_id, request))
        slot.run_tasks.add(task)
        task.add_done_callback(slot.run_tasks.discard)
        return task

    async def execute(self, client_id: str, request: ExecutionRequest) -> ExecutionOutcome | None:
        """Run ``request`` on the client's sandbox, reporting through its channel."""
        slot = self._registry.get(client_id)
        if slot is None:
            return None
        await self._wait_for_init(slot)
        if not self._has_sandbox(slot):
            await self._send_session_expired(slot)
            return None

        if self._config.overlap_policy == "reject" and slot.run_lock.locked():
            await self._send(slot, "error", f"[{self.mode.value}] An execution is already in progress")
            return None

        async with slot.run_lock:
            # The session may have been stopped while this run was queued.
            session = slot.session
            if session is None or session.sandbox is None or not session.sandbox.is_alive:
                await self._send_session_expired(slot)
                return None

            self._apply_runtime_defaults(session, request)
            if not request.entry_command:
                await self._send(slot, "error", f"[{self.mode.value}] No entry command for language '{request.language}'")
                return None
            engine = ExecutionEngine(
                session.sandbox,
                emit=lambda event: self._send_execution_event(slot, event),
                config=self._config,
                extractor=self._extractor,
            )
            try:
                return await engine.run(request)
            except TransportError as exc:
                logger.info("Client went away mid-run", client_id=client_id, error=str(exc))
                slot.closed = True
                await self._discard_sandbox(slot)
            except SandboxLostError as exc:
                logger.error("Sandbox lost", client_id=client_id, error=str(exc))
                await self._send(slot, "error", str(exc))
                await self._discard_sandbox(slot)
            except SandboxError as exc:
                logger.warning("Run failed", client_id=client_id, state=engine.state.value, error=str(exc))
                await self._send(slot, "error", str(exc))
            except Exception as exc:  # noqa: BLE001
                logger.error("Unexpected execution error", client_id=client_id, error=str(exc), exc_info=True)
                await self._send(slot, "error", f"[{self.mode.value}] Execution failed: {exc}")
        return None

    async def stop_session(self, client_id: str) -> None:
        """Destroy the client's sandbox; idempotent."""
        slot = self._registry.get(client_id)
        if slot is None:
            return
        await self._cancel_init(slot)
        async with slot.lifecycle_lock:
            await self._teardown(slot, reason="stop")

    def list_sessions(self) -> list[Session]:
        return self._registry.sessions()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _has_sandbox(slot: ClientSlot) -> bool:
        return slot.session is not None and slot.session.has_sandbox

    @staticmethod
    def _apply_runtime_defaults(session: Session, request: ExecutionRequest) -> None:
        request.language = request.language or session.language
        profile = get_runtime(request.language)
        if profile is None:
            return
        request.entry_command = request.entry_command or profile.entry_command
        request.file_extension = request.file_extension or profile.extension
        if request.install_command is None:
            request.install_command = profile.install_command
        if request.setup_code is None:
            request.setup_code = profile.setup_code

    async def _wait_for_init(self, slot: ClientSlot) -> None:
        """Park a run sent right after init-session until the sandbox exists."""
        current = asyncio.current_task()
        slot.init_waiters.add(current)
        try:
            # A superseding init replaces the task being waited on.
            while slot.init_task is not None and not slot.init_task.done():
                await asyncio.wait({slot.init_task})
        finally:
            slot.init_waiters.discard(current)

    async def _cancel_init(self, slot: ClientSlot) -> None:
        init = slot.init_task
        if init is None or init.done() or init is asyncio.current_task():
            return
        init.cancel()
        await asyncio.gather(init, return_exceptions=True)

    def _destroy_abandoned(self, create: asyncio.Future) -> None:
        if create.cancelled() or create.exception() is not None:
            return
        sandbox = create.result()
        logger.info("Destroying sandbox of cancelled init", sandbox_id=sandbox.id)
        task = asyncio.create_task(sandbox.destroy())
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _teardown(self, slot: ClientSlot, reason: str) -> None:
        """Cancel in-flight runs, then destroy the sandbox. Caller holds the lifecycle lock."""
        current = asyncio.current_task()
        pending = [
            task
            for task in slot.run_tasks
            if task is not current and task not in slot.init_waiters and not task.done()
        ]
        for task in pending:
            task.cancel()
        if pending:
            # Poll loops must be gone before the sandbox they reference is.
            await asyncio.gather(*pending, return_exceptions=True)
        await self._discard_sandbox(slot, reason=reason)

    async def _discard_sandbox(self, slot: ClientSlot, reason: str = "lost") -> None:
        session = slot.session
        if session is None or session.sandbox is None:
            return
        sandbox, session.sandbox = session.sandbox, None
        await sandbox.destroy()
        logger.info("Sandbox destroyed", client_id=slot.client_id, sandbox_id=sandbox.id, reason=reason)

    async def _send_execution_event(self, slot: ClientSlot, event: OutputEvent | ExitEvent) -> None:
        if isinstance(event, ExitEvent):
            await self._send(slot, "exit", {"code": event.code}, raise_on_close=True)
        else:
            await self._send(
                slot,
                "output",
                {"stream": event.stream.value, "data": event.payload},
                raise_on_close=True,
            )

    async def _send_session_expired(self, slot: ClientSlot) -> None:
        await self._send(
            slot,
            "error",
            f"[{self.mode.value}] Session expired: no active sandbox, initialize the session again",
        )

    async def _send(
        self,
        slot: ClientSlot,
        event: str,
        data: Any,
        raise_on_close: bool = False,
    ) -> None:
        if slot.closed:
            if raise_on_close:
                raise TransportError(mode=self.mode.value, cause="connection closed")
            return
        try:
            await slot.channel.send(event, data)
        except TransportError:
            slot.closed = True
            if raise_on_close:
                raise
            logger.debug("Dropped event for closed client", client_id=slot.client_id, event_name=event)
