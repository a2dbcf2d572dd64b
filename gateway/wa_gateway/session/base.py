"""Abstract session client and the events it emits.

A session client is the opaque handle to the remote network: it can be
told to connect with stored credentials, send a payload, download an
attachment, log out, and terminate. Everything it observes is published as
a sequence of typed events consumed by the lifecycle manager.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from ..models import DisconnectReason, OutboundPayload

CONNECTION_OPEN = "open"
CONNECTION_CLOSE = "close"


@dataclass(frozen=True)
class ConnectionUpdate:
    """Connection state change; any combination of fields may be set."""

    challenge: str | None = None
    connection: str | None = None
    reason: DisconnectReason | None = None


@dataclass(frozen=True)
class CredentialsUpdate:
    name: str
    value: Any


@dataclass(frozen=True)
class MessagesUpsert:
    messages: list[dict[str, Any]] = field(default_factory=list)
    kind: str = "notify"


SessionEvent = ConnectionUpdate | CredentialsUpdate | MessagesUpsert

_END = object()


class SessionClient(ABC):
    """Base class every session client must implement.

    Subclasses publish events with ``_emit()`` and signal the end of the
    stream with ``_close_events()``; ``events()`` is shared.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    def _emit(self, event: SessionEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def _close_events(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_END)

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Yield events in arrival order until the client terminates."""
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item

    @abstractmethod
    async def connect(self, credentials: dict[str, Any]) -> None: ...

    @abstractmethod
    async def send(self, target: str, payload: OutboundPayload) -> str:
        """Send *payload* to *target* and return the remote message id."""

    @abstractmethod
    async def download_media(self, message: dict[str, Any]) -> bytes: ...

    @abstractmethod
    async def logout(self) -> None: ...

    @abstractmethod
    async def terminate(self) -> None: ...
