"""WhatsApp address (JID) helpers."""

from __future__ import annotations

import re

from .errors import InvalidTarget

USER_DOMAIN = "s.whatsapp.net"
GROUP_SUFFIX = "@g.us"

_NON_DIGITS = re.compile(r"\D")
_BROADCAST_SUFFIXES = ("@broadcast", "@newsletter")


def normalize_address(target: str | None) -> str:
    """Turn a phone number or JID into a routable JID.

    Qualified addresses (containing ``@``) pass through unchanged. Anything
    else is reduced to its digits and suffixed with the user domain.
    """
    if target is None:
        raise InvalidTarget(target)
    target = target.strip()
    if "@" in target:
        return target
    digits = _NON_DIGITS.sub("", target)
    if not digits:
        raise InvalidTarget(target)
    return f"{digits}@{USER_DOMAIN}"


def is_group(jid: str) -> bool:
    return jid.endswith(GROUP_SUFFIX)


def is_broadcast(jid: str) -> bool:
    """Status updates, broadcast lists and newsletter channels."""
    return jid.endswith(_BROADCAST_SUFFIXES)
