"""Queue item store: validated enqueue, tenant-scoped reads, guarded delete."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from salesdesk.activity import ActivityLog
from salesdesk.core.config import Settings
from salesdesk.core.database import Database
from salesdesk.core.database_pg import PostgresDatabase
from salesdesk.core.models import (
    EnqueueRequest,
    EnqueueResult,
    EntityType,
    QueueItem,
    QueuePriority,
    QueueStatus,
)
from salesdesk.tenancy import ContactDirectory

logger = logging.getLogger(__name__)

ACTIVE_STATES = frozenset({
    QueueStatus.PENDING,
    QueueStatus.IN_PROGRESS,
    QueueStatus.RETRY_SCHEDULED,
})

REMOVABLE_STATES = frozenset({
    QueueStatus.PENDING,
    QueueStatus.RETRY_SCHEDULED,
    QueueStatus.CANCELLED,
})

# Numeric aliases used by older clients: 1 = high, 2 = normal
_PRIORITY_ALIASES = {"1": QueuePriority.HIGH, "2": QueuePriority.NORMAL}


class InvalidInputError(ValueError):
    """Raised for malformed caller input. The message is user-facing."""


class ItemNotFoundError(LookupError):
    """Raised when an item is missing or belongs to another tenant."""


class InvalidStateError(Exception):
    """Raised when an item's status forbids the requested change."""


def parse_priority(value: str | int | QueuePriority | None,
                   message: str = "Invalid priority value") -> QueuePriority:
    if value is None:
        return QueuePriority.NORMAL
    if isinstance(value, QueuePriority):
        return value
    if isinstance(value, bool):
        raise InvalidInputError(message)
    key = str(value).strip().lower()
    if key in _PRIORITY_ALIASES:
        return _PRIORITY_ALIASES[key]
    try:
        return QueuePriority(key)
    except ValueError:
        raise InvalidInputError(message) from None


def parse_scheduled_at(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp. Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip())
        except ValueError:
            raise InvalidInputError("Invalid scheduled date") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class ItemStore:
    """Tenant-scoped persistence for AI call queue items."""

    def __init__(
        self,
        db: Database | PostgresDatabase,
        settings: Settings | None = None,
        contacts: ContactDirectory | None = None,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.contacts = contacts or ContactDirectory(db)
        self.activity = ActivityLog(db)

    async def list_items(
        self,
        company_id: str,
        status: QueueStatus | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[QueueItem]:
        s = self.settings
        limit = s.list_limit_default if limit is None else max(1, min(limit, s.list_limit_max))
        return await self.db.list_queue_items(company_id, status, limit, max(0, offset))

    async def get(self, company_id: str, item_id: str) -> QueueItem | None:
        return await self.db.get_queue_item(company_id, item_id)

    async def create(
        self,
        company_id: str,
        request: EnqueueRequest,
        user_id: str | None = None,
    ) -> EnqueueResult:
        """Add a batch of contacts to the queue.

        The whole batch is rejected for malformed input. Otherwise contacts
        outside the tenant are dropped (rejected) and contacts that are
        already active, or repeated in the batch, are dropped (skipped).
        """
        ids = [c for c in request.contact_ids if c]
        if not ids:
            raise InvalidInputError("At least one contact required")
        if len(ids) > self.settings.max_batch_size:
            raise InvalidInputError(
                f"Maximum {self.settings.max_batch_size} contacts per batch"
            )
        priority = parse_priority(request.priority)
        scheduled_at = parse_scheduled_at(request.scheduled_at)

        unique_ids = list(dict.fromkeys(ids))
        repeated = len(ids) - len(unique_ids)

        owned = await self.contacts.filter_to_company(company_id, unique_ids)
        if not owned:
            raise InvalidInputError("No valid contacts found")
        candidates = [c for c in unique_ids if c in owned]
        rejected = len(unique_ids) - len(candidates)

        active = await self.db.get_active_contact_ids(company_id, candidates)
        skipped = repeated + len(active)

        created = 0
        for contact_id in candidates:
            if contact_id in active:
                continue
            item = QueueItem(
                id=str(uuid.uuid4()),
                company_id=company_id,
                contact_id=contact_id,
                priority=priority,
                max_attempts=self.settings.default_max_attempts,
                scheduled_at=scheduled_at,
            )
            # The partial unique index catches a concurrent enqueue of the same contact
            if not await self.db.insert_queue_item(item):
                skipped += 1
                continue
            created += 1
            await self.activity.record(
                company_id, EntityType.QUEUE_ITEM, item.id, "enqueued",
                user_id=user_id,
                new_value={"contact_id": contact_id, "priority": priority.value},
            )

        if created == 0:
            message = "All selected contacts are already in the queue"
        else:
            message = f"Added {created}, skipped {skipped} already in queue"
        logger.info(
            "Enqueue for %s: created=%d skipped=%d rejected=%d",
            company_id, created, skipped, rejected,
        )
        return EnqueueResult(
            created=created, skipped=skipped, rejected=rejected, message=message
        )

    async def delete(self, company_id: str, item_id: str) -> None:
        """Hard-delete an item that is pending, retry_scheduled or cancelled."""
        if await self.db.delete_queue_item_if(company_id, item_id, REMOVABLE_STATES):
            return
        if await self.db.get_queue_item(company_id, item_id) is None:
            raise ItemNotFoundError("Item not found")
        raise InvalidStateError("Cannot remove item that is in progress or completed")
