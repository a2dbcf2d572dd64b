"""Exceptions raised by the gateway's public operations."""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all gateway errors."""


class NotConnected(GatewayError):
    """The session is not open, so nothing can be sent."""

    def __init__(self, message: str = "WhatsApp session is not connected") -> None:
        super().__init__(message)


class PairingRequired(NotConnected):
    """The session was logged out and must be paired again."""

    def __init__(self, message: str = "Logged out; re-pair required") -> None:
        super().__init__(message)


class InvalidTarget(GatewayError):
    def __init__(self, target: str | None) -> None:
        super().__init__(f"Invalid target address: {target!r}")
        self.target = target


class SendFailed(GatewayError):
    """The session client rejected or failed a send."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Send failed: {cause}")
        self.cause = cause


class NotFound(GatewayError):
    def __init__(self, media_id: str) -> None:
        super().__init__(f"Media not found: {media_id}")
        self.media_id = media_id


class EmptyPayload(GatewayError):
    def __init__(self) -> None:
        super().__init__("Refusing to persist an empty media payload")
