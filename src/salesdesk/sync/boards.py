"""Client-side queue and pipeline boards driven by the optimistic engine."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from salesdesk.core.config import Settings
from salesdesk.core.models import (
    PIPELINE_STATUSES,
    ActionResult,
    Contact,
    ContactStatus,
    CreateDealRequest,
    CreateDealResult,
    Deal,
    EnqueueResult,
    PipelineStage,
    PipelineStats,
    QueueItem,
    QueueStats,
    QueueStatus,
)
from salesdesk.item_store import parse_priority
from salesdesk.ordering import dispatch_candidates, dispatch_sort_key
from salesdesk.sync.client import DashboardClient
from salesdesk.sync.optimistic import OptimisticBoard, PendingMutation

logger = logging.getLogger(__name__)


def _place_queue_item(item: QueueItem, bucket: str) -> QueueItem:
    status = QueueStatus(bucket)
    update: dict[str, Any] = {"status": status}
    if status == QueueStatus.IN_PROGRESS:
        update["attempts"] = min(item.attempts + 1, item.max_attempts)
        update["last_attempt_at"] = datetime.now(timezone.utc)
    return item.model_copy(update=update)


def _place_deal(deal: Deal, bucket: str) -> Deal:
    return deal.model_copy(update={"stage_id": bucket})


def _place_contact(contact: Contact, bucket: str) -> Contact:
    return contact.model_copy(update={"status": ContactStatus(bucket)})


def _created_this_week(deal: Deal) -> bool:
    if deal.created_at is None:
        return False
    created = deal.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created >= datetime.now(timezone.utc) - timedelta(days=7)


class QueueBoard:
    """Queue items bucketed by status, kept in dispatch order."""

    def __init__(self, client: DashboardClient, settings: Settings | None = None):
        self.client = client
        self.settings = settings or Settings()
        self.board: OptimisticBoard[QueueItem] = OptimisticBoard(
            place=_place_queue_item, sort_key=dispatch_sort_key
        )
        self.stats: QueueStats | None = None

    def items(self, status: QueueStatus) -> list[QueueItem]:
        return self.board.items(status.value)

    async def refresh(self) -> None:
        items = await self.client.list_queue(limit=self.settings.list_limit_max)
        buckets: dict[str, list[QueueItem]] = {s.value: [] for s in QueueStatus}
        for item in items:
            buckets[item.status.value].append(item)
        self.board.replace_all(buckets)
        self.stats = await self.client.queue_stats()

    def up_next(self, now: datetime | None = None, limit: int = 5) -> list[QueueItem]:
        """Due items the worker would claim next, from local state."""
        items = [i for bucket in self.board.buckets.values() for i in bucket]
        return dispatch_candidates(items, now or datetime.now(timezone.utc))[:limit]

    def dispatch(self, item_id: str) -> PendingMutation[QueueItem] | None:
        found = self.board.locate(item_id)
        if found is None:
            return None
        bucket, _ = found
        return self.board.begin_move(
            item_id, bucket, QueueStatus.IN_PROGRESS.value,
            lambda: self.client.dispatch(item_id),
        )

    def cancel(self, item_id: str) -> PendingMutation[QueueItem] | None:
        found = self.board.locate(item_id)
        if found is None:
            return None
        bucket, _ = found
        return self.board.begin_move(
            item_id, bucket, QueueStatus.CANCELLED.value,
            lambda: self.client.cancel(item_id),
        )

    def remove(self, item_id: str) -> PendingMutation[QueueItem] | None:
        found = self.board.locate(item_id)
        if found is None:
            return None
        bucket, _ = found
        return self.board.begin_remove(item_id, bucket, lambda: self.client.remove(item_id))

    async def set_priority(self, item_id: str, priority: str | int) -> ActionResult:
        """Applied locally once the server accepts it."""
        result = await self.client.set_priority(item_id, priority)
        if not result.success:
            self.board.last_error = result.message
            return result
        found = self.board.locate(item_id)
        if found is not None:
            bucket, item = found
            items = self.board.buckets[bucket]
            items[items.index(item)] = item.model_copy(update={"priority": parse_priority(priority)})
            items.sort(key=dispatch_sort_key)
        return result

    async def enqueue(
        self,
        contact_ids: list[str],
        priority: str | None = None,
        scheduled_at: datetime | str | None = None,
    ) -> EnqueueResult:
        result = await self.client.enqueue(contact_ids, priority, scheduled_at)
        await self.refresh()
        return result


class DealsBoard:
    """Deals bucketed by stage id. Moved deals go to the top of their column."""

    def __init__(self, client: DashboardClient):
        self.client = client
        self.board: OptimisticBoard[Deal] = OptimisticBoard(
            place=_place_deal, on_revert=self._restore_removed
        )
        self.stages: list[PipelineStage] = []
        self.stats = PipelineStats()
        self.filters: dict[str, Any] = {}

    def deals(self, stage_id: str) -> list[Deal]:
        return self.board.items(stage_id)

    async def refresh(self, **filters: Any) -> None:
        if filters:
            self.filters = filters
        self.stages = await self.client.list_stages()
        result = await self.client.get_deals(**self.filters)
        self.board.replace_all(result.deals)
        self.stats = result.stats

    def move_deal(self, deal_id: str, to_stage_id: str) -> PendingMutation[Deal] | None:
        found = self.board.locate(deal_id)
        if found is None:
            return None
        from_stage_id, _ = found
        return self.board.begin_move(
            deal_id, from_stage_id, to_stage_id,
            lambda: self.client.move_deal(deal_id, to_stage_id, from_stage_id),
        )

    def remove_deal(self, deal_id: str) -> PendingMutation[Deal] | None:
        found = self.board.locate(deal_id)
        if found is None:
            return None
        stage_id, _ = found
        op = self.board.begin_remove(
            deal_id, stage_id, lambda: self.client.delete_deal(deal_id)
        )
        if op is not None:
            self._adjust_stats(op.item, -1)
        return op

    async def add_deal(self, request: CreateDealRequest) -> CreateDealResult:
        result = await self.client.create_deal(request)
        if result.success and result.deal is not None:
            self.board.add(result.deal.stage_id, result.deal)
            self._adjust_stats(result.deal, 1)
        else:
            self.board.last_error = result.message
        return result

    def _restore_removed(self, op: PendingMutation[Deal]) -> None:
        if op.to_bucket is None:
            self._adjust_stats(op.item, 1)

    def _adjust_stats(self, deal: Deal, sign: int) -> None:
        """Keep the header totals in step with local adds and removals until the next refresh."""
        stats = self.stats
        week = sign if _created_this_week(deal) else 0
        self.stats = stats.model_copy(update={
            "total_deals": max(0, stats.total_deals + sign),
            "total_value": max(0.0, stats.total_value + sign * deal.value),
            "new_this_week": max(0, stats.new_this_week + week),
        })


class ContactsBoard:
    """Contacts bucketed by pipeline status."""

    def __init__(self, client: DashboardClient):
        self.client = client
        self.board: OptimisticBoard[Contact] = OptimisticBoard(place=_place_contact)

    def contacts(self, status: ContactStatus) -> list[Contact]:
        return self.board.items(status.value)

    def counts(self) -> dict[ContactStatus, int]:
        return {s: len(self.board.items(s.value)) for s in PIPELINE_STATUSES}

    async def refresh(self) -> None:
        result = await self.client.contacts_by_status()
        self.board.replace_all(
            {s.value: result.contacts.get(s, []) for s in PIPELINE_STATUSES}
        )

    def move_contact(
        self, contact_id: str, to_status: ContactStatus | str
    ) -> PendingMutation[Contact] | None:
        target = ContactStatus(to_status).value
        found = self.board.locate(contact_id)
        if found is None:
            return None
        from_status, _ = found
        return self.board.begin_move(
            contact_id, from_status, target,
            lambda: self.client.update_contact_status(contact_id, target),
        )
