"""Queue stats - counts by status and today's estimated call cost."""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from salesdesk.core.config import Settings
from salesdesk.core.database import Database
from salesdesk.core.database_pg import PostgresDatabase
from salesdesk.core.models import QueueStats, QueueStatus


def start_of_day(now: datetime, tz_name: str = "UTC") -> datetime:
    """Local midnight in tz_name for the day containing now, as UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(tz_name))
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


class StatsAggregator:
    """Read-only projection over the queue."""

    def __init__(self, db: Database | PostgresDatabase, settings: Settings | None = None):
        self.db = db
        self.settings = settings or Settings()

    async def get_stats(self, company_id: str, now: datetime | None = None) -> QueueStats:
        now = now or datetime.now(timezone.utc)
        since = start_of_day(now, self.settings.stats_timezone)

        pending = await self.db.count_queue_items(
            company_id, [QueueStatus.PENDING, QueueStatus.RETRY_SCHEDULED]
        )
        in_progress = await self.db.count_queue_items(
            company_id, [QueueStatus.IN_PROGRESS]
        )
        completed = await self.db.count_queue_items(
            company_id, [QueueStatus.COMPLETED], updated_since=since
        )
        failed = await self.db.count_queue_items(
            company_id, [QueueStatus.FAILED], updated_since=since
        )

        return QueueStats(
            pending=pending,
            in_progress=in_progress,
            completed_today=completed,
            failed_today=failed,
            estimated_cost_today=round(completed * self.settings.cost_per_completed_call, 2),
        )

    async def get_all_stats(self) -> dict[str, QueueStats]:
        """Stats for every company with members."""
        results: dict[str, QueueStats] = {}
        for company_id in await self.db.get_distinct_companies():
            results[company_id] = await self.get_stats(company_id)
        return results
