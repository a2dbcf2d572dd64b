"""Data models shared across the gateway."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    CONNECTED = "connected"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class DisconnectKind(str, Enum):
    LOGGED_OUT = "logged_out"
    RESTART_REQUIRED = "restart_required"
    TRANSIENT = "transient"


class PayloadKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    DOCUMENT = "document"


@dataclass(frozen=True)
class PairingChallenge:
    code: str
    issued_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class SessionStatus:
    state: SessionState = SessionState.DISCONNECTED
    last_error: str | None = None
    connected_at: datetime | None = None
    challenge: PairingChallenge | None = None
    pairing_required: bool = False
    reconnect_at: datetime | None = None

    def snapshot(self) -> SessionStatus:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "last_error": self.last_error,
            "connected_at": (
                self.connected_at.isoformat() if self.connected_at else None
            ),
            "pairing_required": self.pairing_required,
            "has_challenge": self.challenge is not None,
            "reconnect_at": (
                self.reconnect_at.isoformat() if self.reconnect_at else None
            ),
        }


@dataclass(frozen=True)
class MessageRecord:
    id: str
    conversation_id: str
    direction: Direction
    text: str
    sender_name: str
    timestamp_ms: int
    content_type: str = "text"
    attachment_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "direction": self.direction.value,
            "text": self.text,
            "sender_name": self.sender_name,
            "timestamp": self.timestamp_ms,
            "content_type": self.content_type,
            "attachment_ref": self.attachment_ref,
        }


@dataclass(frozen=True)
class MediaRecord:
    id: str
    path: str
    content_type: str
    size_bytes: int
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class OutboundPayload:
    kind: PayloadKind = PayloadKind.TEXT
    text: str = ""
    data: bytes | None = None
    mimetype: str | None = None
    caption: str = ""
    filename: str | None = None
    ptt: bool = False

    @property
    def summary(self) -> str:
        """Best-effort text used for the outbound message record."""
        return self.text or self.caption or self.filename or ""

    def to_wire(self) -> dict[str, Any]:
        """Shape understood by the session bridge (binary as base64)."""
        wire: dict[str, Any] = {"kind": self.kind.value}
        if self.text:
            wire["text"] = self.text
        if self.data is not None:
            wire["data"] = base64.b64encode(self.data).decode()
        if self.mimetype:
            wire["mimetype"] = self.mimetype
        if self.caption:
            wire["caption"] = self.caption
        if self.filename:
            wire["filename"] = self.filename
        if self.kind == PayloadKind.AUDIO:
            wire["ptt"] = self.ptt
        return wire


@dataclass(frozen=True)
class DisconnectReason:
    status_code: int | None = None
    message: str = ""
