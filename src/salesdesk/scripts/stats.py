"""Print queue stats for every company (run ad hoc or from cron)."""

from __future__ import annotations

import asyncio

from salesdesk.core.config import Settings
from salesdesk.core.db_factory import create_database
from salesdesk.stats import StatsAggregator


async def run_stats() -> None:
    settings = Settings()
    db = create_database(settings)
    await db.connect()

    try:
        results = await StatsAggregator(db, settings).get_all_stats()
        if not results:
            print("No companies found.")
        for company_id, stats in results.items():
            print(f"[{company_id}] Queue:")
            print(f"  Pending:            {stats.pending}")
            print(f"  In Progress:        {stats.in_progress}")
            print(f"  Completed Today:    {stats.completed_today}")
            print(f"  Failed Today:       {stats.failed_today}")
            print(f"  Est. Cost Today:    ${stats.estimated_cost_today:.2f}")
            print()
    finally:
        await db.close()


def main() -> None:
    asyncio.run(run_stats())


if __name__ == "__main__":
    main()
