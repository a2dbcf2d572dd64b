"""Inbound message parsing.

Raw messages arrive from the session client as nested dicts (the
multi-device message proto rendered as JSON). Text is taken from an ordered
list of extractor rules; the first rule that yields a non-empty string wins.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from .addressing import is_broadcast, is_group

TextRule = tuple[str, Callable[[dict[str, Any]], Any]]

# Containers whose payload is another message proto.
_WRAPPERS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "documentWithCaptionMessage",
)

ATTACHMENT_TYPES = (
    "imageMessage",
    "videoMessage",
    "audioMessage",
    "documentMessage",
    "stickerMessage",
)


def _field(content: dict[str, Any], container: str, name: str) -> Any:
    inner = content.get(container)
    if isinstance(inner, dict):
        return inner.get(name)
    return None


TEXT_RULES: tuple[TextRule, ...] = (
    ("conversation", lambda c: c.get("conversation")),
    ("extended_text", lambda c: _field(c, "extendedTextMessage", "text")),
    ("image_caption", lambda c: _field(c, "imageMessage", "caption")),
    ("video_caption", lambda c: _field(c, "videoMessage", "caption")),
    ("document_caption", lambda c: _field(c, "documentMessage", "caption")),
)


@dataclass(frozen=True)
class Attachment:
    kind: str
    mimetype: str
    caption: str = ""


def unwrap_content(content: dict[str, Any] | None) -> dict[str, Any]:
    """Strip ephemeral / view-once wrappers down to the real message."""
    content = content or {}
    for _ in range(len(_WRAPPERS)):
        for wrapper in _WRAPPERS:
            inner = content.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                content = inner["message"]
                break
        else:
            break
    return content


def extract_text(
    content: dict[str, Any], rules: Iterable[TextRule] = TEXT_RULES
) -> str:
    for _name, rule in rules:
        value = rule(content)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def find_attachment(content: dict[str, Any]) -> Attachment | None:
    for key in ATTACHMENT_TYPES:
        media = content.get(key)
        if not isinstance(media, dict):
            continue
        return Attachment(
            kind=key.removesuffix("Message"),
            mimetype=media.get("mimetype") or "application/octet-stream",
            caption=media.get("caption") or "",
        )
    return None


class InboundFilter:
    """Decides which inbound messages are recorded at all."""

    def __init__(
        self, ignore_groups: bool = True, ignored_groups: Iterable[str] = ()
    ) -> None:
        self.ignore_groups = ignore_groups
        self.ignored_groups = frozenset(ignored_groups)

    def skip_reason(self, raw: dict[str, Any]) -> str | None:
        """Return why *raw* should be skipped, or None to keep it."""
        if not raw.get("message"):
            return "no content"
        jid = (raw.get("key") or {}).get("remoteJid") or ""
        if not jid:
            return "no conversation id"
        if is_broadcast(jid):
            return "broadcast"
        if is_group(jid) and (self.ignore_groups or jid in self.ignored_groups):
            return "ignored group"
        return None
