"""Tests for dispatch ordering (pure functions, no DB)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from salesdesk.core.models import QueueItem, QueuePriority, QueueStatus
from salesdesk.ordering import (
    dispatch_candidates,
    dispatch_sort_key,
    is_dispatchable,
    order_for_dispatch,
)

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _item(item_id: str, priority: str = "normal", minutes: int = 0, **kwargs) -> QueueItem:
    return QueueItem(
        id=item_id,
        company_id="co",
        contact_id=f"contact-{item_id}",
        priority=priority,
        created_at=T0 + timedelta(minutes=minutes),
        **kwargs,
    )


class TestOrderForDispatch:
    def test_high_before_normal_then_oldest(self):
        a = _item("A", "normal", minutes=0)
        b = _item("B", "high", minutes=5)
        c = _item("C", "high", minutes=1)
        assert [i.id for i in order_for_dispatch([a, b, c])] == ["C", "B", "A"]

    def test_stable_for_equal_keys(self):
        first = _item("first", minutes=3)
        second = _item("second", minutes=3)
        assert [i.id for i in order_for_dispatch([first, second])] == ["first", "second"]
        assert [i.id for i in order_for_dispatch([second, first])] == ["second", "first"]

    def test_sort_key(self):
        assert dispatch_sort_key(_item("x", "high"))[0] == QueuePriority.HIGH.rank

    def test_naive_created_at_treated_as_utc(self):
        naive = _item("naive")
        naive = naive.model_copy(update={"created_at": datetime(2024, 3, 1, 8, 0)})
        aware = _item("aware")
        assert [i.id for i in order_for_dispatch([aware, naive])] == ["naive", "aware"]


class TestCandidates:
    def test_filters_non_dispatchable(self):
        now = T0 + timedelta(hours=1)
        ready = _item("ready")
        retry = _item("retry", status=QueueStatus.RETRY_SCHEDULED, attempts=1)
        cancelled = _item("cancelled", status=QueueStatus.CANCELLED)
        exhausted = _item("exhausted", attempts=3)
        future = _item("future", scheduled_at=now + timedelta(minutes=10))
        due = _item("due", priority="high", scheduled_at=now - timedelta(minutes=10))

        result = dispatch_candidates([ready, retry, cancelled, exhausted, future, due], now)
        assert [i.id for i in result] == ["due", "ready", "retry"]

    def test_manual_dispatch_ignores_schedule(self):
        future = _item("future", scheduled_at=T0 + timedelta(days=1))
        assert is_dispatchable(future)
        assert not is_dispatchable(future, now=T0)
