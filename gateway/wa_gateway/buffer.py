"""Bounded in-memory history of recent messages."""

from __future__ import annotations

from collections import deque
from itertools import islice

from .models import MessageRecord

DEFAULT_CAPACITY = 200
DEFAULT_LIMIT = 50


class MessageBuffer:
    """Fixed-capacity store, newest record first.

    Appending beyond capacity drops the oldest records.
    """

    def __init__(
        self, capacity: int = DEFAULT_CAPACITY, default_limit: int = DEFAULT_LIMIT
    ) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._default_limit = default_limit
        self._records: deque[MessageRecord] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, record: MessageRecord) -> None:
        self._records.appendleft(record)

    def recent(self, limit: int | None = None) -> list[MessageRecord]:
        """Return up to *limit* records, newest first."""
        if limit is None or limit <= 0:
            limit = self._default_limit
        return list(islice(self._records, limit))

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
