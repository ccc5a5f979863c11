"""Tests for the API client and the client-side boards, run against the app in-process."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport

import salesdesk.web.app as app_module
from conftest import OUTSIDER, USER, minutes_ago
from salesdesk.core.models import (
    ContactStatus,
    CreateDealRequest,
    OutcomeReport,
    QueuePriority,
    QueueStatus,
)
from salesdesk.sync.boards import ContactsBoard, DealsBoard, QueueBoard
from salesdesk.sync.client import DashboardApiError, DashboardClient
from salesdesk.sync.optimistic import MutationOutcome


@pytest_asyncio.fixture
async def make_client(seeded, settings, monkeypatch):
    monkeypatch.setattr(app_module, "db", seeded)
    monkeypatch.setattr(app_module, "settings", settings)
    clients: list[DashboardClient] = []

    def _make(user_id: str = USER) -> DashboardClient:
        client = DashboardClient(user_id, settings, transport=ASGITransport(app=app_module.app))
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.close()


class TestDashboardClient:
    @pytest.mark.asyncio
    async def test_enqueue_and_read(self, make_client):
        client = make_client()
        result = await client.enqueue(["c1", "c2"], priority="high")
        assert result.created == 2

        items = await client.list_queue(QueueStatus.PENDING)
        assert len(items) == 2
        assert (await client.get_item(items[0].id)).contact_id in {"c1", "c2"}
        assert await client.get_item("missing") is None
        assert (await client.queue_stats()).pending == 2

    @pytest.mark.asyncio
    async def test_action_failures_are_results(self, make_client):
        client = make_client()
        result = await client.dispatch("missing")
        assert not result.success
        assert result.error == "not_found"
        assert result.message == "Item not found"

    @pytest.mark.asyncio
    async def test_outsider_reads_raise(self, make_client):
        client = make_client(OUTSIDER)
        with pytest.raises(DashboardApiError) as exc_info:
            await client.list_queue()
        assert exc_info.value.status_code == 403
        assert exc_info.value.result.error == "not_authorized"

        result = await client.dispatch("anything")
        assert result.error == "not_authorized"

    @pytest.mark.asyncio
    async def test_worker_report(self, make_client, make_item):
        client = make_client()
        item = await make_item("c1")
        assert (await client.dispatch(item.id)).success
        report = OutcomeReport(status="retry_scheduled", outcome="no_answer")
        assert (await client.report_outcome(item.id, report)).success

        stored = await client.get_item(item.id)
        assert stored.status == QueueStatus.RETRY_SCHEDULED
        assert stored.scheduled_at is not None


class TestQueueBoard:
    @pytest.mark.asyncio
    async def test_refresh_buckets_by_status(self, make_client, make_item):
        await make_item("c1")
        await make_item("c2", priority=QueuePriority.HIGH)
        await make_item("c3", status=QueueStatus.COMPLETED, attempts=1)
        board = QueueBoard(make_client())
        await board.refresh()

        pending = board.items(QueueStatus.PENDING)
        assert [i.contact_id for i in pending] == ["c2", "c1"]
        assert len(board.items(QueueStatus.COMPLETED)) == 1
        assert board.items(QueueStatus.FAILED) == []
        assert board.stats.pending == 2

    @pytest.mark.asyncio
    async def test_dispatch_is_optimistic_then_committed(self, make_client, make_item):
        item = await make_item("c1")
        board = QueueBoard(make_client())
        await board.refresh()

        op = board.dispatch(item.id)
        [local] = board.items(QueueStatus.IN_PROGRESS)
        assert local.attempts == 1
        assert board.items(QueueStatus.PENDING) == []

        assert await op == MutationOutcome.COMMITTED
        await board.refresh()
        assert [i.id for i in board.items(QueueStatus.IN_PROGRESS)] == [item.id]

    @pytest.mark.asyncio
    async def test_losing_dispatch_reverts(self, make_client, make_item):
        item = await make_item("c1")
        first = QueueBoard(make_client())
        second = QueueBoard(make_client())
        await first.refresh()
        await second.refresh()

        assert await first.dispatch(item.id) == MutationOutcome.COMMITTED
        assert await second.dispatch(item.id) == MutationOutcome.REVERTED
        assert [i.id for i in second.items(QueueStatus.PENDING)] == [item.id]
        assert second.board.last_error == "Item is already being dispatched"

    @pytest.mark.asyncio
    async def test_remove_in_progress_reverts(self, make_client, make_item):
        item = await make_item("c1", status=QueueStatus.IN_PROGRESS, attempts=1)
        board = QueueBoard(make_client())
        await board.refresh()

        assert await board.remove(item.id) == MutationOutcome.REVERTED
        assert [i.id for i in board.items(QueueStatus.IN_PROGRESS)] == [item.id]

    @pytest.mark.asyncio
    async def test_cancel_and_remove(self, make_client, make_item):
        keep = await make_item("c1")
        drop = await make_item("c2")
        board = QueueBoard(make_client())
        await board.refresh()

        assert await board.cancel(keep.id) == MutationOutcome.COMMITTED
        assert await board.remove(drop.id) == MutationOutcome.COMMITTED
        await board.refresh()
        assert [i.id for i in board.items(QueueStatus.CANCELLED)] == [keep.id]
        assert board.items(QueueStatus.PENDING) == []
        assert board.cancel("missing") is None

    @pytest.mark.asyncio
    async def test_set_priority_reorders(self, make_client, make_item):
        first = await make_item("c1")
        second = await make_item("c2")
        board = QueueBoard(make_client())
        await board.refresh()
        assert [i.id for i in board.items(QueueStatus.PENDING)] == [first.id, second.id]

        result = await board.set_priority(second.id, 1)
        assert result.success
        assert [i.id for i in board.items(QueueStatus.PENDING)] == [second.id, first.id]

        bad = await board.set_priority(first.id, "urgent")
        assert not bad.success
        assert board.board.last_error == "Priority must be 1 (high) or 2 (normal)"

    @pytest.mark.asyncio
    async def test_enqueue_refreshes(self, make_client):
        board = QueueBoard(make_client())
        result = await board.enqueue(["c1", "c2"])
        assert result.created == 2
        assert len(board.items(QueueStatus.PENDING)) == 2

    @pytest.mark.asyncio
    async def test_up_next_follows_dispatch_order(self, make_client, make_item):
        normal = await make_item("c1", created_at=minutes_ago(30))
        urgent = await make_item("c2", priority=QueuePriority.HIGH, created_at=minutes_ago(5))
        await make_item("c3", priority=QueuePriority.HIGH, scheduled_at=minutes_ago(-60))
        await make_item("c4", status=QueueStatus.COMPLETED, attempts=1)
        await make_item("c5", status=QueueStatus.RETRY_SCHEDULED, attempts=3)
        board = QueueBoard(make_client())
        await board.refresh()

        assert [i.id for i in board.up_next()] == [urgent.id, normal.id]
        assert [i.id for i in board.up_next(limit=1)] == [urgent.id]
        assert board.up_next()[0].contact.name == "Test User1"


class TestDealsBoard:
    @pytest.mark.asyncio
    async def test_add_move_remove(self, make_client, stages):
        board = DealsBoard(make_client())
        await board.refresh()
        assert len(board.stages) == 7

        new_lead = stages["new_lead"].id
        won = stages["closed_won"].id
        created = await board.add_deal(CreateDealRequest(title="Windows", stage_id=new_lead))
        assert created.success
        deal_id = created.deal.id
        assert [d.id for d in board.deals(new_lead)] == [deal_id]

        assert await board.move_deal(deal_id, won) == MutationOutcome.COMMITTED
        assert [d.id for d in board.deals(won)] == [deal_id]
        assert board.deals(won)[0].stage_id == won

        await board.refresh()
        assert [d.id for d in board.deals(won)] == [deal_id]
        assert board.stats.conversion_rate == 100

        assert await board.remove_deal(deal_id) == MutationOutcome.COMMITTED
        await board.refresh()
        assert board.stats.total_deals == 0

    @pytest.mark.asyncio
    async def test_move_to_unknown_stage_reverts(self, make_client, stages):
        board = DealsBoard(make_client())
        new_lead = stages["new_lead"].id
        created = await board.add_deal(CreateDealRequest(title="Fence", stage_id=new_lead))

        op = board.move_deal(created.deal.id, "not-a-stage")
        assert board.deals(new_lead) == []
        assert await op == MutationOutcome.REVERTED
        assert [d.id for d in board.deals(new_lead)] == [created.deal.id]
        assert board.board.last_error == "Invalid stage"

    @pytest.mark.asyncio
    async def test_failed_create_sets_error(self, make_client, stages):
        board = DealsBoard(make_client())
        result = await board.add_deal(CreateDealRequest(title="x", stage_id=stages["new_lead"].id))
        assert not result.success
        assert board.board.last_error == "Title must be at least 2 characters"

    @pytest.mark.asyncio
    async def test_refresh_with_filters(self, make_client, stages):
        client = make_client()
        board = DealsBoard(client)
        await board.add_deal(
            CreateDealRequest(title="Hot tub", stage_id=stages["new_lead"].id, priority="hot")
        )
        await board.add_deal(CreateDealRequest(title="Shed", stage_id=stages["new_lead"].id))

        await board.refresh(priority="hot")
        assert [d.title for d in board.deals(stages["new_lead"].id)] == ["Hot tub"]
        assert board.filters == {"priority": "hot"}

    @pytest.mark.asyncio
    async def test_add_and_remove_adjust_stats(self, make_client, stages):
        board = DealsBoard(make_client())
        await board.refresh()
        new_lead = stages["new_lead"].id
        created = await board.add_deal(
            CreateDealRequest(title="Patio", stage_id=new_lead, value=1200)
        )
        assert board.stats.total_deals == 1
        assert board.stats.total_value == 1200
        assert board.stats.new_this_week == 1

        op = board.remove_deal(created.deal.id)
        assert board.stats.total_deals == 0
        assert board.stats.total_value == 0
        assert board.stats.new_this_week == 0
        assert await op == MutationOutcome.COMMITTED
        assert board.stats.total_deals == 0

    @pytest.mark.asyncio
    async def test_failed_remove_restores_stats(self, make_client, stages):
        client = make_client()
        board = DealsBoard(client)
        created = await board.add_deal(
            CreateDealRequest(title="Porch", stage_id=stages["new_lead"].id, value=300)
        )
        await board.refresh()
        assert (await client.delete_deal(created.deal.id)).success

        op = board.remove_deal(created.deal.id)
        assert board.stats.total_deals == 0
        assert await op == MutationOutcome.REVERTED
        assert board.stats.total_deals == 1
        assert board.stats.total_value == 300
        assert [d.id for d in board.deals(stages["new_lead"].id)] == [created.deal.id]


class TestContactsBoard:
    @pytest.mark.asyncio
    async def test_refresh_and_move(self, make_client):
        board = ContactsBoard(make_client())
        await board.refresh()
        assert board.counts()[ContactStatus.NEW] == 8

        op = board.move_contact("c1", ContactStatus.QUALIFIED)
        [local] = board.contacts(ContactStatus.QUALIFIED)
        assert local.id == "c1"
        assert local.status == ContactStatus.QUALIFIED
        assert await op == MutationOutcome.COMMITTED

        await board.refresh()
        assert [c.id for c in board.contacts(ContactStatus.QUALIFIED)] == ["c1"]
        assert board.counts()[ContactStatus.NEW] == 7

    @pytest.mark.asyncio
    async def test_rejected_status_reverts(self, make_client):
        board = ContactsBoard(make_client())
        await board.refresh()

        op = board.move_contact("c1", "nurturing")
        assert "c1" not in [c.id for c in board.contacts(ContactStatus.NEW)]
        assert await op == MutationOutcome.REVERTED
        assert "c1" in [c.id for c in board.contacts(ContactStatus.NEW)]
        assert board.board.last_error == "Invalid status"

    @pytest.mark.asyncio
    async def test_unknown_contact_is_noop(self, make_client):
        board = ContactsBoard(make_client())
        await board.refresh()
        assert board.move_contact("b1", ContactStatus.CONTACTED) is None
        assert board.move_contact("c1", ContactStatus.NEW) is None
        with pytest.raises(ValueError):
            board.move_contact("c1", "asleep")
