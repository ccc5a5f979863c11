"""Tests for the periodic refresher."""

from __future__ import annotations

import asyncio
import logging

import pytest

from salesdesk.sync.reconciler import PeriodicRefresher


class TestPeriodicRefresher:
    @pytest.mark.asyncio
    async def test_refresh_once_runs_every_refresher(self, settings):
        calls: list[str] = []

        async def queue():
            calls.append("queue")

        async def deals():
            calls.append("deals")

        refresher = PeriodicRefresher([queue], settings)
        refresher.add(deals)
        await refresher.refresh_once()
        assert calls == ["queue", "deals"]
        assert refresher.cycles == 1

    @pytest.mark.asyncio
    async def test_failure_is_logged_and_others_still_run(self, settings, caplog):
        calls: list[str] = []

        async def broken():
            raise ConnectionError("api down")

        async def fine():
            calls.append("fine")

        refresher = PeriodicRefresher([broken, fine], settings)
        with caplog.at_level(logging.ERROR, logger="salesdesk.sync.reconciler"):
            await refresher.refresh_once()
        assert calls == ["fine"]
        assert "Refresh failed" in caplog.text

    @pytest.mark.asyncio
    async def test_start_and_stop(self, settings):
        ticked = asyncio.Event()

        async def tick():
            ticked.set()

        refresher = PeriodicRefresher([tick], settings, interval=0.01)
        task = refresher.start()
        assert refresher.start() is task
        await asyncio.wait_for(ticked.wait(), timeout=1)
        await refresher.stop()
        assert task.done()
        assert refresher.cycles >= 1

    def test_interval_defaults_to_settings(self, settings):
        assert PeriodicRefresher(settings=settings).interval == settings.refresh_interval_seconds
