"""Shared test fixtures."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from salesdesk.core.config import Settings
from salesdesk.core.database import Database
from salesdesk.core.models import (
    CompanyMember,
    Contact,
    QueueItem,
    QueuePriority,
    QueueStatus,
)
from salesdesk.pipeline import PipelineService

COMPANY = "company_a"
OTHER_COMPANY = "company_b"
USER = "user_a"
OTHER_USER = "user_b"
OUTSIDER = "user_nobody"

COMPANY_CONTACTS = [f"c{i}" for i in range(1, 9)]
OTHER_CONTACTS = ["b1", "b2"]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(use_sqlite=True, sqlite_path=str(tmp_path / "salesdesk_test.db"))


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings)
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def seeded(db):
    """Two companies, one member each, and a handful of contacts."""
    await db.add_member(CompanyMember(user_id=USER, company_id=COMPANY, role="owner"))
    await db.add_member(CompanyMember(user_id=OTHER_USER, company_id=OTHER_COMPANY))
    for i, cid in enumerate(COMPANY_CONTACTS):
        await db.create_contact(
            Contact(
                id=cid, company_id=COMPANY, first_name="Test", last_name=f"User{i}",
                phone=f"+1555000{i:04d}",
            )
        )
    for cid in OTHER_CONTACTS:
        await db.create_contact(Contact(id=cid, company_id=OTHER_COMPANY, phone="+15559999999"))
    return db


@pytest_asyncio.fixture
async def stages(seeded, settings):
    """Default pipeline stages for COMPANY, keyed by slug."""
    created = await PipelineService(seeded, settings).ensure_default_stages(COMPANY)
    return {s.slug: s for s in created}


@pytest.fixture
def make_item(seeded):
    """Factory fixture that stores a queue item directly."""

    async def _make(
        contact_id: str = "c1",
        status: QueueStatus = QueueStatus.PENDING,
        priority: QueuePriority = QueuePriority.NORMAL,
        attempts: int = 0,
        max_attempts: int = 3,
        company_id: str = COMPANY,
        created_at: datetime | None = None,
        scheduled_at: datetime | None = None,
    ) -> QueueItem:
        now = datetime.now(timezone.utc)
        item = QueueItem(
            id=str(uuid.uuid4()),
            company_id=company_id,
            contact_id=contact_id,
            status=status,
            priority=priority,
            attempts=attempts,
            max_attempts=max_attempts,
            scheduled_at=scheduled_at,
            last_attempt_at=now if attempts or status == QueueStatus.IN_PROGRESS else None,
            created_at=created_at or now,
        )
        assert await seeded.insert_queue_item(item)
        stored = await seeded.get_queue_item(company_id, item.id)
        assert stored is not None
        return stored

    return _make


def minutes_ago(n: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=n)
