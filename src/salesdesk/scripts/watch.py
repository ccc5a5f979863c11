"""Queue watcher - keeps a local queue board in sync and logs its counts.

Usage:
    salesdesk-watch <user-id>      # via pyproject.toml entrypoint
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from salesdesk.core.config import Settings
from salesdesk.sync.boards import QueueBoard
from salesdesk.sync.client import DashboardClient
from salesdesk.sync.reconciler import PeriodicRefresher

logger = logging.getLogger(__name__)


async def _run(user_id: str) -> None:
    settings = Settings()
    client = DashboardClient(user_id, settings)
    board = QueueBoard(client, settings)

    async def refresh_and_log() -> None:
        await board.refresh()
        stats = board.stats
        logger.info(
            "Queue: %s | pending=%s in_progress=%s cost_today=%s",
            board.board.counts(),
            stats.pending if stats else "?",
            stats.in_progress if stats else "?",
            stats.estimated_cost_today if stats else "?",
        )
        up_next = [i.contact.name if i.contact else i.contact_id for i in board.up_next()]
        if up_next:
            logger.info("Up next: %s", ", ".join(up_next))

    refresher = PeriodicRefresher([refresh_and_log], settings)
    stopped = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stopped.set)
        except NotImplementedError:
            pass  # Windows

    refresher.start()
    try:
        await stopped.wait()
    finally:
        await refresher.stop()
        await client.close()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if len(sys.argv) < 2:
        print("Usage: salesdesk-watch <user-id>")
        sys.exit(2)
    asyncio.run(_run(sys.argv[1]))


if __name__ == "__main__":
    main()
