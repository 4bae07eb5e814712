"""
Session registry: client connection id -> connection slot.

Owned by the ``SessionManager`` and handed to whoever needs it; never a
module-level global.  All mutation happens on the event loop thread, so plain
dict operations are atomic; operations that span an ``await`` take the slot's
own lock, which keeps sessions independent of each other.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterator

from app.sandbox.models import Session


class EventChannel(ABC):
    """Outbound half of the duplex protocol for one client."""

    @abstractmethod
    async def send(self, event: str, data: Any) -> None:
        """Deliver one event; raises ``TransportError`` if the client is gone."""


@dataclass
class ClientSlot:
    """Everything the server tracks for one connected client."""

    client_id: str
    channel: EventChannel
    session: Session | None = None
    closed: bool = False
    # Serializes init / stop / disconnect for this client.
    lifecycle_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Serializes runs for this client.
    run_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    run_tasks: set[asyncio.Task] = field(default_factory=set)
    # Pending init-session, run in the background so the receive loop stays free.
    init_task: asyncio.Task | None = None
    # Runs parked until that init finishes; a re-init must not cancel them.
    init_waiters: set[asyncio.Task] = field(default_factory=set)


class SessionRegistry:
    """In-memory, per-key concurrency-safe store of client slots."""

    def __init__(self) -> None:
        self._slots: dict[str, ClientSlot] = {}

    def register(self, client_id: str, channel: EventChannel) -> ClientSlot:
        if client_id in self._slots:
            raise KeyError(f"Client already registered: {client_id}")
        slot = ClientSlot(client_id=client_id, channel=channel)
        self._slots[client_id] = slot
        return slot

    def get(self, client_id: str) -> ClientSlot | None:
        return self._slots.get(client_id)

    def remove(self, client_id: str) -> ClientSlot | None:
        return self._slots.pop(client_id, None)

    def sessions(self) -> list[Session]:
        return [slot.session for slot in self._slots.values() if slot.session is not None]

    def live_sandbox_count(self) -> int:
        return sum(1 for session in self.sessions() if session.has_sandbox)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._slots

    def __iter__(self) -> Iterator[ClientSlot]:
        return iter(list(self._slots.values()))

    def __len__(self) -> int:
        return len(self._slots)
