"""Shared fixtures for wa-gateway tests.

Provides a scriptable in-memory FakeSessionClient, a factory that records
every client the manager builds, and a SessionManager wired to temporary
stores with short reconnect delays.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from wa_gateway.buffer import MessageBuffer
from wa_gateway.credentials import CredentialStore
from wa_gateway.lifecycle import SessionManager
from wa_gateway.media import MediaStore
from wa_gateway.models import OutboundPayload
from wa_gateway.session.base import SessionClient, SessionEvent

# ---------------------------------------------------------------------------
# FakeSessionClient
# ---------------------------------------------------------------------------


class FakeSessionClient(SessionClient):
    """Session client whose events are pushed by the test.

    Tracks:
      - the credentials passed to connect()
      - every send() call
      - logout() / terminate() calls
    """

    def __init__(self, connect_error: Exception | None = None) -> None:
        super().__init__()
        self.connect_error = connect_error
        self.send_error: Exception | None = None
        self.connected_with: dict[str, Any] | None = None
        self.sent: list[tuple[str, OutboundPayload]] = []
        self.media: dict[str, bytes] = {}
        self.download_error: Exception | None = None
        self.logged_out = False
        self.terminated = False

    def emit(self, event: SessionEvent) -> None:
        self._emit(event)

    async def connect(self, credentials: dict[str, Any]) -> None:
        self.connected_with = credentials
        if self.connect_error is not None:
            raise self.connect_error

    async def send(self, target: str, payload: OutboundPayload) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((target, payload))
        return f"remote-{len(self.sent)}"

    async def download_media(self, message: dict[str, Any]) -> bytes:
        if self.download_error is not None:
            raise self.download_error
        return self.media.get(message["key"]["id"], b"")

    async def logout(self) -> None:
        self.logged_out = True

    async def terminate(self) -> None:
        self.terminated = True
        self._close_events()


class FakeClientFactory:
    """Callable client factory that remembers every client it built."""

    def __init__(self) -> None:
        self.clients: list[FakeSessionClient] = []
        self.connect_errors: list[Exception] = []

    def __call__(self) -> FakeSessionClient:
        error = self.connect_errors.pop(0) if self.connect_errors else None
        client = FakeSessionClient(connect_error=error)
        self.clients.append(client)
        return client

    @property
    def current(self) -> FakeSessionClient:
        return self.clients[-1]

    @property
    def live(self) -> list[FakeSessionClient]:
        return [c for c in self.clients if not c.terminated]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture()
def credentials(tmp_path: Path) -> CredentialStore:
    return CredentialStore(tmp_path / "credentials")


@pytest.fixture()
def media(tmp_path: Path) -> MediaStore:
    return MediaStore(tmp_path / "media")


@pytest.fixture()
def messages() -> MessageBuffer:
    return MessageBuffer(capacity=10)


@pytest.fixture()
def session_config() -> dict[str, Any]:
    """Short delays so reconnect timers fire within a test."""
    return {
        "reconnect_delay": 0.05,
        "restart_delay": 0.02,
        "connect_failure_delay": 0.1,
        "terminate_timeout": 1,
    }


@pytest_asyncio.fixture()
async def manager(
    factory: FakeClientFactory,
    credentials: CredentialStore,
    media: MediaStore,
    messages: MessageBuffer,
    session_config: dict[str, Any],
):
    mgr = SessionManager(factory, credentials, media, messages, session_config)
    yield mgr
    await mgr.stop(timeout=1)


@pytest.fixture()
def settle() -> Callable[[SessionManager], Awaitable[None]]:
    """Let pumped client events reach the actor, then wait for it to drain."""

    async def _settle(mgr: SessionManager) -> None:
        for _ in range(5):
            await asyncio.sleep(0)
        await mgr.sync()

    return _settle


@pytest.fixture()
def eventually() -> Callable[..., Awaitable[None]]:
    """Poll *predicate* until it holds or *timeout* seconds pass."""

    async def _eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _eventually
