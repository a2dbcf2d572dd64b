"""Timers for the gateway: one-shot deferred tasks and periodic jobs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

logger = logging.getLogger(__name__)

AsyncCallback = Callable[[], Awaitable[None]]


class DeferredTask:
    """Run an async callback once after *delay* seconds unless cancelled."""

    def __init__(self, delay: float, callback: AsyncCallback, name: str = "") -> None:
        self.delay = delay
        self.name = name or getattr(callback, "__name__", "deferred")
        self.due_at = datetime.now(UTC) + timedelta(seconds=delay)
        self._callback = callback
        self._task: asyncio.Task[None] = asyncio.create_task(self._run())

    async def _run(self) -> None:
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            return
        try:
            await self._callback()
        except Exception:
            logger.exception("Deferred task '%s' failed", self.name)

    @property
    def pending(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()


class PeriodicTask:
    """Run an async callback every *interval* seconds until stopped."""

    def __init__(
        self, interval: float, callback: AsyncCallback, name: str = ""
    ) -> None:
        self.interval = interval
        self.name = name or getattr(callback, "__name__", "periodic")
        self.last_run: datetime | None = None
        self._callback = callback
        self._task: asyncio.Task[None] | None = None
        self._running = False

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            self.last_run = datetime.now(UTC)
            try:
                await self._callback()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Periodic task '%s' failed", self.name)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Periodic task '%s' started (every %ss)", self.name, self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Periodic task '%s' stopped", self.name)
