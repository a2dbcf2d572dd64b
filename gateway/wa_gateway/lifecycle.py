"""Session lifecycle manager: the single owner of the WhatsApp session.

All mutable session state (status, current client, message history, media
index) is changed by one actor task that consumes an inbox of commands and
client events. Client events are tagged with the generation of the client
that produced them; once a client is torn down its late events are dropped.

``send()`` is the only operation that runs outside the actor. It reads the
active client handle once, which is published on open and withdrawn on any
other transition.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .addressing import normalize_address
from .buffer import MessageBuffer
from .credentials import CredentialStore
from .errors import EmptyPayload, NotConnected, PairingRequired, SendFailed
from .extract import InboundFilter, extract_text, find_attachment, unwrap_content
from .media import MediaStore
from .models import (
    DisconnectKind,
    DisconnectReason,
    Direction,
    MessageRecord,
    OutboundPayload,
    PairingChallenge,
    PayloadKind,
    SessionState,
    SessionStatus,
)
from .scheduler import DeferredTask
from .session.base import (
    CONNECTION_CLOSE,
    CONNECTION_OPEN,
    ConnectionUpdate,
    CredentialsUpdate,
    MessagesUpsert,
    SessionClient,
    SessionEvent,
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], SessionClient]

LOGGED_OUT_CODES = frozenset({401})
RESTART_REQUIRED_CODES = frozenset({515})
LOGGED_OUT_MESSAGE = "Logged out; re-pair required"


def classify_disconnect(reason: DisconnectReason | None) -> DisconnectKind:
    """Map a close reason to the reconnect policy that applies to it."""
    code = reason.status_code if reason else None
    if code in LOGGED_OUT_CODES:
        return DisconnectKind.LOGGED_OUT
    if code in RESTART_REQUIRED_CODES:
        return DisconnectKind.RESTART_REQUIRED
    return DisconnectKind.TRANSIENT


def _timestamp_ms(value: Any) -> int:
    """Message timestamps are seconds (int, str or a {low, high} long)."""
    if isinstance(value, dict):
        value = value.get("low")
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return int(time.time() * 1000)
    return seconds * 1000


class _Command(str, Enum):
    START = "start"
    SCHEDULED_START = "scheduled_start"
    LOGOUT = "logout"
    FORCE_RECONNECT = "force_reconnect"
    SYNC = "sync"


@dataclass
class _CommandItem:
    command: _Command
    token: int = 0
    done: asyncio.Future[None] | None = field(default=None, repr=False)


@dataclass
class _EventItem:
    generation: int
    event: SessionEvent


class SessionManager:
    """Drives connect -> pair -> open -> close -> reconnect for one session.

    Config keys:
        reconnect_delay: Seconds before reconnecting after a transient close (3)
        restart_delay: Seconds before reconnecting when a restart is requested (1)
        connect_failure_delay: Seconds before retrying a failed connect (10)
        terminate_timeout: Seconds allowed for a client teardown (10)
        ignore_groups: Skip every group message (True)
        ignored_groups: Group JIDs to skip when ``ignore_groups`` is false
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        credentials: CredentialStore,
        media: MediaStore,
        messages: MessageBuffer,
        config: dict[str, Any] | None = None,
    ) -> None:
        config = config or {}
        self._client_factory = client_factory
        self._credentials = credentials
        self._media = media
        self._messages = messages

        self._reconnect_delay = float(config.get("reconnect_delay", 3))
        self._restart_delay = float(config.get("restart_delay", 1))
        self._connect_failure_delay = float(config.get("connect_failure_delay", 10))
        self._terminate_timeout = float(config.get("terminate_timeout", 10))
        self._filter = InboundFilter(
            ignore_groups=config.get("ignore_groups", True),
            ignored_groups=config.get("ignored_groups", ()),
        )

        self._status = SessionStatus()
        self._client: SessionClient | None = None
        self._active: SessionClient | None = None
        self._generation = 0
        self._pump: asyncio.Task[None] | None = None

        self._inbox: asyncio.Queue[_CommandItem | _EventItem] = asyncio.Queue()
        self._actor: asyncio.Task[None] | None = None

        self._reconnect: DeferredTask | None = None
        self._reconnect_token = 0

    # ---- read side ----

    def get_status(self) -> SessionStatus:
        return self._status.snapshot()

    def get_pairing_challenge(self) -> PairingChallenge | None:
        if self._status.state != SessionState.AWAITING_PAIRING:
            return None
        return self._status.challenge

    def recent_messages(self, limit: int | None = None) -> list[MessageRecord]:
        return self._messages.recent(limit)

    def resolve_media(self, media_id: str) -> tuple[bytes, str]:
        return self._media.read(media_id)

    @property
    def is_connected(self) -> bool:
        return self._active is not None

    # ---- commands ----

    async def start(self) -> None:
        """Connect unless a session is already connecting or open."""
        await self._submit(_Command.START)

    async def logout(self) -> None:
        """Log out remotely, forget credentials and begin a fresh pairing."""
        await self._submit(_Command.LOGOUT)

    async def force_reconnect(self) -> None:
        """Drop the current connection and reconnect with stored credentials."""
        await self._submit(_Command.FORCE_RECONNECT)

    async def sync(self) -> None:
        """Wait until every item queued so far has been handled."""
        await self._submit(_Command.SYNC)

    def ensure_connected(self) -> SessionClient:
        """Return the active client or raise why there is none."""
        client = self._active
        if client is None:
            if self._status.pairing_required:
                raise PairingRequired()
            raise NotConnected()
        return client

    async def send(self, target: str, payload: OutboundPayload) -> str:
        """Send *payload* to *target* and return the remote message id."""
        client = self.ensure_connected()

        jid = normalize_address(target)
        try:
            remote_id = await client.send(jid, payload)
        except Exception as exc:
            logger.warning("Send to %s failed: %s", jid, exc)
            raise SendFailed(exc) from exc

        self._messages.append(
            MessageRecord(
                id=remote_id,
                conversation_id=jid,
                direction=Direction.OUTBOUND,
                text=payload.summary,
                sender_name="",
                timestamp_ms=int(time.time() * 1000),
                content_type=(
                    "text"
                    if payload.kind == PayloadKind.TEXT
                    else payload.mimetype or "application/octet-stream"
                ),
            )
        )
        return remote_id

    async def stop(self, timeout: float = 5.0) -> None:
        """Stop the actor and tear the client down, waiting at most *timeout*."""
        self._cancel_reconnect()

        if self._actor is not None:
            self._actor.cancel()
            try:
                await self._actor
            except asyncio.CancelledError:
                pass
            self._actor = None

        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            if isinstance(item, _CommandItem) and item.done and not item.done.done():
                item.done.cancel()

        try:
            await asyncio.wait_for(self._teardown(), timeout=timeout)
        except Exception:
            logger.warning("Session teardown did not finish cleanly", exc_info=True)

        self._status.state = SessionState.DISCONNECTED
        self._status.challenge = None
        logger.info("SessionManager stopped")

    # ---- actor ----

    def _ensure_actor(self) -> None:
        if self._actor is None or self._actor.done():
            self._actor = asyncio.create_task(self._run_actor())

    async def _submit(self, command: _Command, token: int = 0) -> None:
        self._ensure_actor()
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(_CommandItem(command, token=token, done=done))
        await done

    async def _run_actor(self) -> None:
        while True:
            item = await self._inbox.get()
            try:
                if isinstance(item, _EventItem):
                    if item.generation != self._generation:
                        logger.debug(
                            "Dropping %s from stale session %d",
                            type(item.event).__name__,
                            item.generation,
                        )
                        continue
                    await self._handle_event(item.event)
                else:
                    await self._handle_command(item)
            except Exception:
                logger.exception("Unhandled error in session actor")
            finally:
                if isinstance(item, _CommandItem) and item.done and not item.done.done():
                    item.done.set_result(None)

    async def _handle_command(self, item: _CommandItem) -> None:
        command = item.command
        if command == _Command.START:
            await self._do_start()
        elif command == _Command.SCHEDULED_START:
            if item.token != self._reconnect_token:
                logger.debug("Ignoring superseded reconnect #%d", item.token)
                return
            self._reconnect = None
            self._status.reconnect_at = None
            await self._do_start()
        elif command == _Command.LOGOUT:
            await self._do_logout()
        elif command == _Command.FORCE_RECONNECT:
            await self._do_force_reconnect()

    async def _pump_events(self, client: SessionClient, generation: int) -> None:
        """Forward one client's event stream into the actor inbox."""
        try:
            async for event in client.events():
                self._inbox.put_nowait(_EventItem(generation, event))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Event stream of session %d failed", generation)

    # ---- transitions ----

    async def _do_start(self) -> None:
        if self._status.state != SessionState.DISCONNECTED:
            logger.debug("start() ignored; session is %s", self._status.state.value)
            return

        self._cancel_reconnect()
        await self._teardown()

        try:
            self._credentials.ensure_dir()
            credentials = self._credentials.load()
            client = self._client_factory()
        except Exception as exc:
            self._connect_failed(exc)
            return

        self._generation += 1
        self._client = client
        self._pump = asyncio.create_task(self._pump_events(client, self._generation))
        self._status.state = SessionState.CONNECTING
        logger.info(
            "Connecting session %d (%s)",
            self._generation,
            "stored credentials" if credentials else "new pairing",
        )

        try:
            await client.connect(credentials)
        except Exception as exc:
            await self._teardown()
            self._connect_failed(exc)

    def _connect_failed(self, exc: Exception) -> None:
        logger.error("Session connect failed: %s", exc, exc_info=exc)
        self._status.state = SessionState.DISCONNECTED
        self._status.challenge = None
        self._status.last_error = f"Connect failed: {exc}"
        self._schedule_start(self._connect_failure_delay, "connect failed")

    async def _do_logout(self) -> None:
        client = self._client
        if client is not None:
            try:
                await client.logout()
            except Exception:
                logger.warning("Remote logout failed", exc_info=True)

        await self._teardown()
        self._cancel_reconnect()
        self._credentials.clear()
        self._status = SessionStatus()
        logger.info("Logged out; starting a new pairing")
        await self._do_start()

    async def _do_force_reconnect(self) -> None:
        await self._teardown()
        self._status.state = SessionState.DISCONNECTED
        self._status.challenge = None
        self._schedule_start(self._restart_delay, "forced reconnect")

    async def _teardown(self) -> None:
        """Retire the current client; its pending events become stale."""
        client, self._client = self._client, None
        self._active = None
        pump, self._pump = self._pump, None
        self._generation += 1

        if pump is not None and not pump.done():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass

        if client is not None:
            try:
                await asyncio.wait_for(client.terminate(), timeout=self._terminate_timeout)
            except Exception:
                logger.warning("Error terminating session client", exc_info=True)

    # ---- reconnect timer ----

    def _schedule_start(self, delay: float, why: str) -> None:
        self._cancel_reconnect()
        token = self._reconnect_token

        async def _fire() -> None:
            self._inbox.put_nowait(_CommandItem(_Command.SCHEDULED_START, token=token))

        self._reconnect = DeferredTask(delay, _fire, name="reconnect")
        self._status.reconnect_at = self._reconnect.due_at
        logger.info("Reconnecting in %.1fs (%s)", delay, why)

    def _cancel_reconnect(self) -> None:
        """Invalidate any scheduled start, including one already queued."""
        self._reconnect_token += 1
        if self._reconnect is not None:
            self._reconnect.cancel()
            self._reconnect = None
        self._status.reconnect_at = None

    # ---- events ----

    async def _handle_event(self, event: SessionEvent) -> None:
        if isinstance(event, ConnectionUpdate):
            if event.challenge:
                self._on_challenge(event.challenge)
            if event.connection == CONNECTION_OPEN:
                self._on_open()
            elif event.connection == CONNECTION_CLOSE:
                await self._on_close(event.reason)
        elif isinstance(event, CredentialsUpdate):
            self._credentials.save(event.name, event.value)
        elif isinstance(event, MessagesUpsert):
            await self._on_messages(event)
        else:
            logger.debug("Ignoring unknown session event %r", event)

    def _on_challenge(self, code: str) -> None:
        self._status.challenge = PairingChallenge(code=code)
        self._status.state = SessionState.AWAITING_PAIRING
        self._active = None
        logger.info("Pairing QR code issued; scan it with the WhatsApp app")

    def _on_open(self) -> None:
        self._cancel_reconnect()
        self._status.state = SessionState.CONNECTED
        self._status.challenge = None
        self._status.last_error = None
        self._status.pairing_required = False
        self._status.connected_at = datetime.now(UTC)
        self._active = self._client
        logger.info("WhatsApp connected")

    async def _on_close(self, reason: DisconnectReason | None) -> None:
        kind = classify_disconnect(reason)
        self._active = None
        self._status.state = SessionState.DISCONNECTED
        self._status.challenge = None
        await self._teardown()

        if kind == DisconnectKind.LOGGED_OUT:
            self._cancel_reconnect()
            self._credentials.clear()
            self._status.last_error = LOGGED_OUT_MESSAGE
            self._status.pairing_required = True
            logger.warning("Session logged out; waiting for a new pairing")
        elif kind == DisconnectKind.RESTART_REQUIRED:
            self._schedule_start(self._restart_delay, "restart required")
        else:
            message = (reason.message if reason else "") or "connection closed"
            self._status.last_error = message
            logger.warning("Connection closed: %s", message)
            self._schedule_start(self._reconnect_delay, message)

    async def _on_messages(self, event: MessagesUpsert) -> None:
        if event.kind != "notify":
            logger.debug("Ignoring %d '%s' messages", len(event.messages), event.kind)
            return
        for raw in event.messages:
            try:
                record = await self._ingest(raw)
            except Exception:
                logger.exception(
                    "Skipping inbound message %s",
                    (raw.get("key") or {}).get("id") if isinstance(raw, dict) else raw,
                )
                continue
            if record is not None:
                self._messages.append(record)

    async def _ingest(self, raw: dict[str, Any]) -> MessageRecord | None:
        key = raw.get("key") or {}
        skip = self._filter.skip_reason(raw)
        if skip:
            logger.debug("Skipping inbound message %s: %s", key.get("id"), skip)
            return None

        content = unwrap_content(raw.get("message"))
        text = extract_text(content)
        content_type = "text"
        attachment_ref = None

        attachment = find_attachment(content)
        if attachment is not None:
            content_type = attachment.mimetype
            client = self._client
            if client is None:
                raise NotConnected()
            data = await client.download_media(raw)
            try:
                attachment_ref = self._media.persist(
                    data, attachment.mimetype, attachment.caption
                ).id
            except EmptyPayload:
                logger.warning(
                    "Empty %s attachment on message %s", attachment.kind, key.get("id")
                )

        return MessageRecord(
            id=str(key.get("id") or ""),
            conversation_id=key["remoteJid"],
            direction=Direction.OUTBOUND if key.get("fromMe") else Direction.INBOUND,
            text=text,
            sender_name=raw.get("pushName") or "",
            timestamp_ms=_timestamp_ms(raw.get("messageTimestamp")),
            content_type=content_type,
            attachment_ref=attachment_ref,
        )
