"""Periodic refresh loop that replaces local boards with server state.

There is no push channel for queue or pipeline changes, so staleness is
bounded by polling at a fixed interval.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from salesdesk.core.config import Settings

logger = logging.getLogger(__name__)


class PeriodicRefresher:
    """Runs each registered refresh coroutine every refresh_interval_seconds."""

    def __init__(
        self,
        refreshers: list[Callable[[], Awaitable[None]]] | None = None,
        settings: Settings | None = None,
        interval: float | None = None,
    ):
        self.settings = settings or Settings()
        self.interval = interval if interval is not None else self.settings.refresh_interval_seconds
        self.refreshers = list(refreshers or [])
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self.cycles = 0

    def add(self, refresher: Callable[[], Awaitable[None]]) -> None:
        self.refreshers.append(refresher)

    async def refresh_once(self) -> None:
        for refresh in self.refreshers:
            try:
                await refresh()
            except Exception:
                logger.exception("Refresh failed")
        self.cycles += 1

    async def run(self) -> None:
        self._running = True
        logger.info("Refresher started - polling every %ss", self.interval)
        while self._running:
            await self.refresh_once()
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task[None]:
        """Run the loop as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Graceful shutdown."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Refresher stopped")
