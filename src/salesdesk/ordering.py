"""Dispatch ordering for queue items.

High priority first, then oldest first. Python's sort is stable, so items
with equal keys keep their incoming order.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

from salesdesk.core.models import QueueItem, QueuePriority, QueueStatus

DISPATCHABLE_STATES = frozenset({QueueStatus.PENDING, QueueStatus.RETRY_SCHEDULED})

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _aware(dt: datetime | None) -> datetime:
    if dt is None:
        return _EPOCH
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def priority_rank(priority: QueuePriority) -> int:
    return priority.rank


def dispatch_sort_key(item: QueueItem) -> tuple[int, datetime]:
    return (priority_rank(item.priority), _aware(item.created_at))


def order_for_dispatch(items: Iterable[QueueItem]) -> list[QueueItem]:
    return sorted(items, key=dispatch_sort_key)


def is_dispatchable(item: QueueItem, now: datetime | None = None) -> bool:
    """True when the item may be claimed right now.

    Manual dispatch ignores scheduled_at; pass now=None for that check.
    """
    if item.status not in DISPATCHABLE_STATES or item.attempts_exhausted:
        return False
    if now is not None and item.scheduled_at is not None:
        return _aware(item.scheduled_at) <= _aware(now)
    return True


def dispatch_candidates(items: Iterable[QueueItem], now: datetime) -> list[QueueItem]:
    """Due, dispatchable items in dispatch order."""
    return order_for_dispatch(i for i in items if is_dispatchable(i, now))
