"""Tests for the message ring buffer."""

from __future__ import annotations

import pytest

from wa_gateway.buffer import MessageBuffer
from wa_gateway.models import Direction, MessageRecord


def _record(n: int) -> MessageRecord:
    return MessageRecord(
        id=f"m{n}",
        conversation_id="5511999999999@s.whatsapp.net",
        direction=Direction.INBOUND,
        text=f"message {n}",
        sender_name="Alice",
        timestamp_ms=1700000000000 + n,
    )


def test_recent_is_newest_first():
    buf = MessageBuffer(capacity=5)
    for n in range(3):
        buf.append(_record(n))

    assert [r.id for r in buf.recent()] == ["m2", "m1", "m0"]


def test_capacity_drops_oldest():
    buf = MessageBuffer(capacity=3)
    for n in range(10):
        buf.append(_record(n))
        assert len(buf) <= 3

    assert [r.id for r in buf.recent(10)] == ["m9", "m8", "m7"]


@pytest.mark.parametrize("appends, limit", [(0, 5), (2, 5), (5, 2), (12, 7), (12, 50)])
def test_recent_never_exceeds_limit_or_capacity(appends, limit):
    buf = MessageBuffer(capacity=8)
    for n in range(appends):
        buf.append(_record(n))

    records = buf.recent(limit)
    assert len(records) == min(limit, appends, 8)
    ids = [int(r.id[1:]) for r in records]
    assert ids == sorted(ids, reverse=True)


def test_non_positive_limit_uses_default():
    buf = MessageBuffer(capacity=100, default_limit=4)
    for n in range(10):
        buf.append(_record(n))

    assert len(buf.recent()) == 4
    assert len(buf.recent(0)) == 4
    assert len(buf.recent(-3)) == 4


def test_invalid_capacity():
    with pytest.raises(ValueError, match="capacity"):
        MessageBuffer(capacity=0)


def test_clear():
    buf = MessageBuffer()
    buf.append(_record(1))
    buf.clear()
    assert len(buf) == 0
    assert buf.recent() == []
