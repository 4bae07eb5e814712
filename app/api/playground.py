"""
Playground WebSocket route.

Each frame is a JSON object ``{"event": <name>, "data": <payload>}`` in both
directions.  ``init-session`` and ``run-code`` are scheduled in the background
so that a ``stop-session`` arriving during an image pull or mid-run is still
processed.
"""

import asyncio
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from structlog import get_logger

from app.models.schemas import ClientMessage, InitSessionPayload, RunCodePayload, ServerMessage
from app.sandbox.errors import TransportError
from app.services.playground_service import get_session_manager
from app.services.registry import EventChannel
from app.services.session_manager import SessionManager

logger = get_logger()
router = APIRouter(tags=["playground"])


class WebSocketChannel(EventChannel):
    """Sends protocol events over one WebSocket connection."""

    def __init__(self, websocket: WebSocket, mode: str) -> None:
        self._websocket = websocket
        self._mode = mode
        self._lock = asyncio.Lock()

    async def send(self, event: str, data: Any) -> None:
        message = ServerMessage(event=event, data=data).model_dump(mode="json")
        async with self._lock:
            try:
                await self._websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as exc:
                raise TransportError(mode=self._mode, cause=exc) from exc


def _validation_summary(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'payload'}: {error['msg']}"
        for error in exc.errors()
    )


async def _dispatch(
    manager: SessionManager,
    client_id: str,
    channel: WebSocketChannel,
    raw: str,
) -> None:
    mode = manager.mode.value
    try:
        message = ClientMessage.model_validate_json(raw)
    except ValidationError:
        await channel.send("error", f"[{mode}] Malformed message: expected {{\"event\", \"data\"}} JSON")
        return

    try:
        if message.event == "init-session":
            payload = InitSessionPayload.model_validate(message.data or {})
            manager.request_init(client_id, payload.language, payload.image)
        elif message.event == "run-code":
            payload = RunCodePayload.model_validate(message.data or {})
            manager.run_code(client_id, payload.to_request())
        elif message.event == "stop-session":
            await manager.stop_session(client_id)
        else:
            await channel.send("error", f"[{mode}] Unknown event: {message.event}")
    except ValidationError as exc:
        logger.info("Invalid payload", client_id=client_id, event_name=message.event)
        await channel.send("error", f"[{mode}] Invalid {message.event} payload: {_validation_summary(exc)}")


@router.websocket("/ws")
async def playground_socket(
    websocket: WebSocket,
    manager: SessionManager = Depends(get_session_manager),
) -> None:
    """Duplex playground channel; closing it tears down the client's sandbox."""
    await websocket.accept()
    client_id = uuid4().hex
    channel = WebSocketChannel(websocket, manager.mode.value)
    await manager.connect(client_id, channel)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                await _dispatch(manager, client_id, channel, raw)
            except TransportError:
                break
    except WebSocketDisconnect as exc:
        logger.info("WebSocket closed by client", client_id=client_id, code=exc.code)
    finally:
        await manager.disconnect(client_id)
