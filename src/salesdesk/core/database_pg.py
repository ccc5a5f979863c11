"""Database connection and CRUD operations - PostgreSQL backend (asyncpg).

Production database backend using asyncpg connection pool. The schema lives in
migrations/001_salesdesk_schema.sql and is applied by salesdesk-init-db.
"""

from __future__ import annotations

import enum
import json
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import asyncpg

from salesdesk.core.config import Settings
from salesdesk.core.database import NotConnectedError
from salesdesk.core.models import (
    ActivityEntry,
    CompanyMember,
    Contact,
    ContactStatus,
    ContactSummary,
    Deal,
    DealFilters,
    EntityType,
    PipelineStage,
    QueueItem,
    QueueStatus,
)

# Queries alias ai_queue as q and contacts as c
QUEUE_ORDER_SQL = (
    "CASE q.priority WHEN 'high' THEN 0 ELSE 1 END ASC, q.created_at ASC, q.id ASC"
)

CONTACT_COLUMNS_SQL = (
    "c.first_name AS contact_first_name, c.last_name AS contact_last_name, "
    "c.phone AS contact_phone, c.business_name AS contact_business_name"
)

_QUEUE_CONTACT_JOIN = "LEFT JOIN contacts c ON c.id = q.contact_id AND c.company_id = q.company_id"
_DEAL_CONTACT_JOIN = "LEFT JOIN contacts c ON c.id = d.contact_id AND c.company_id = d.company_id"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime | None) -> datetime | None:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
    return dict(row)


def _row_to_queue_item(row: asyncpg.Record) -> QueueItem:
    d = _row_to_dict(row)
    d["contact"] = ContactSummary.pop_from_row(d)
    return QueueItem(**d)


def _row_to_stage(row: asyncpg.Record) -> PipelineStage:
    return PipelineStage(**dict(row))


def _row_to_deal(row: asyncpg.Record) -> Deal:
    d = _row_to_dict(row)
    d["contact"] = ContactSummary.pop_from_row(d)
    return Deal(**d)


def _row_to_activity(row: asyncpg.Record) -> ActivityEntry:
    d = _row_to_dict(row)
    d["id"] = str(d["id"])
    for key in ("old_value", "new_value"):
        if isinstance(d.get(key), str):
            d[key] = json.loads(d[key])
    return ActivityEntry(**d)


def _affected(result: str) -> int:
    """Row count from an asyncpg command tag such as 'DELETE 1'."""
    try:
        return int(result.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresDatabase:
    """Async PostgreSQL database connection manager and CRUD operations."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        self._pool = await asyncpg.create_pool(
            self.settings.database_url, min_size=2, max_size=10,
            server_settings={"search_path": "salesdesk, public"},
        )

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise NotConnectedError("Database not connected. Call connect() first.")
        return self._pool

    # -----------------------------------------------------------------------
    # Tenancy and contacts
    # -----------------------------------------------------------------------

    async def add_member(self, member: CompanyMember) -> None:
        await self.pool.execute(
            """
            INSERT INTO company_members (user_id, company_id, role)
            VALUES ($1, $2, $3)
            ON CONFLICT (user_id, company_id) DO NOTHING
            """,
            member.user_id, member.company_id, member.role,
        )

    async def get_member_company(self, user_id: str) -> str | None:
        return await self.pool.fetchval(
            "SELECT company_id FROM company_members WHERE user_id = $1 "
            "ORDER BY created_at ASC LIMIT 1",
            user_id,
        )

    async def create_contact(self, contact: Contact) -> Contact:
        row = await self.pool.fetchrow(
            """
            INSERT INTO contacts (
                id, company_id, first_name, last_name, phone, business_name, status
            ) VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
            """,
            contact.id, contact.company_id, contact.first_name, contact.last_name,
            contact.phone, contact.business_name, contact.status.value,
        )
        return Contact(**dict(row))

    async def get_contact(self, company_id: str, contact_id: str) -> Contact | None:
        row = await self.pool.fetchrow(
            "SELECT * FROM contacts WHERE id = $1 AND company_id = $2",
            contact_id, company_id,
        )
        return Contact(**dict(row)) if row else None

    async def filter_company_contacts(
        self, company_id: str, contact_ids: list[str]
    ) -> list[str]:
        if not contact_ids:
            return []
        rows = await self.pool.fetch(
            "SELECT id FROM contacts WHERE company_id = $1 AND id = ANY($2::text[])",
            company_id, contact_ids,
        )
        return [r["id"] for r in rows]

    async def list_contacts_by_status(
        self, company_id: str, statuses: Iterable[ContactStatus], limit: int = 500
    ) -> list[Contact]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM contacts
            WHERE company_id = $1 AND status = ANY($2::text[])
            ORDER BY updated_at DESC, id ASC
            LIMIT $3
            """,
            company_id, [s.value for s in statuses], limit,
        )
        return [Contact(**dict(r)) for r in rows]

    async def update_contact_status(
        self, company_id: str, contact_id: str, status: ContactStatus
    ) -> Contact | None:
        row = await self.pool.fetchrow(
            """
            UPDATE contacts SET status = $1, updated_at = $2
            WHERE id = $3 AND company_id = $4
            RETURNING *
            """,
            status.value, _now(), contact_id, company_id,
        )
        return Contact(**dict(row)) if row else None

    # -----------------------------------------------------------------------
    # AI queue
    # -----------------------------------------------------------------------

    async def insert_queue_item(self, item: QueueItem) -> bool:
        """Insert a queue item. Returns False if the contact is already active."""
        result = await self.pool.execute(
            """
            INSERT INTO ai_queue (
                id, company_id, contact_id, status, priority, attempts, max_attempts,
                scheduled_at, last_attempt_at, outcome, notes
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT DO NOTHING
            """,
            item.id, item.company_id, item.contact_id,
            item.status.value, item.priority.value,
            item.attempts, item.max_attempts,
            _aware(item.scheduled_at), _aware(item.last_attempt_at),
            item.outcome.value if item.outcome else None, item.notes,
        )
        return result == "INSERT 0 1"

    async def get_queue_item(self, company_id: str, item_id: str) -> QueueItem | None:
        row = await self.pool.fetchrow(
            f"SELECT q.*, {CONTACT_COLUMNS_SQL} FROM ai_queue q {_QUEUE_CONTACT_JOIN} "
            f"WHERE q.id = $1 AND q.company_id = $2",
            item_id, company_id,
        )
        return _row_to_queue_item(row) if row else None

    async def list_queue_items(
        self,
        company_id: str,
        status: QueueStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[QueueItem]:
        if status is not None:
            rows = await self.pool.fetch(
                f"SELECT q.*, {CONTACT_COLUMNS_SQL} FROM ai_queue q {_QUEUE_CONTACT_JOIN} "
                f"WHERE q.company_id = $1 AND q.status = $2 "
                f"ORDER BY {QUEUE_ORDER_SQL} LIMIT $3 OFFSET $4",
                company_id, status.value, limit, offset,
            )
        else:
            rows = await self.pool.fetch(
                f"SELECT q.*, {CONTACT_COLUMNS_SQL} FROM ai_queue q {_QUEUE_CONTACT_JOIN} "
                f"WHERE q.company_id = $1 "
                f"ORDER BY {QUEUE_ORDER_SQL} LIMIT $2 OFFSET $3",
                company_id, limit, offset,
            )
        return [_row_to_queue_item(r) for r in rows]

    async def get_active_contact_ids(
        self, company_id: str, contact_ids: list[str]
    ) -> set[str]:
        if not contact_ids:
            return set()
        rows = await self.pool.fetch(
            """
            SELECT contact_id FROM ai_queue
            WHERE company_id = $1
            AND contact_id = ANY($2::text[])
            AND status IN ('pending', 'in_progress', 'retry_scheduled')
            """,
            company_id, contact_ids,
        )
        return {r["contact_id"] for r in rows}

    async def claim_queue_item(
        self,
        company_id: str,
        item_id: str,
        now: datetime,
        allowed: Iterable[QueueStatus],
    ) -> QueueItem | None:
        """Atomically move an item in one of the allowed statuses to in_progress."""
        row = await self.pool.fetchrow(
            """
            UPDATE ai_queue
            SET status = 'in_progress',
                attempts = attempts + 1,
                last_attempt_at = $1,
                updated_at = $1
            WHERE id = $2 AND company_id = $3
            AND status = ANY($4::text[])
            AND attempts < max_attempts
            RETURNING *
            """,
            _aware(now), item_id, company_id, [s.value for s in allowed],
        )
        return _row_to_queue_item(row) if row else None

    async def update_queue_item_if(
        self,
        company_id: str,
        item_id: str,
        allowed: Iterable[QueueStatus],
        **fields: Any,
    ) -> QueueItem | None:
        """Update fields only while the item is in one of the allowed statuses."""
        set_clauses = []
        values: list[Any] = []
        for i, (key, val) in enumerate(fields.items(), start=1):
            if isinstance(val, enum.Enum):
                val = val.value
            elif isinstance(val, datetime):
                val = _aware(val)
            set_clauses.append(f"{key} = ${i}")
            values.append(val)

        n = len(values)
        set_clauses.append(f"updated_at = ${n + 1}")
        values.append(_now())

        query = (
            f"UPDATE ai_queue SET {', '.join(set_clauses)} "
            f"WHERE id = ${n + 2} AND company_id = ${n + 3} "
            f"AND status = ANY(${n + 4}::text[]) "
            f"RETURNING *"
        )
        values.extend([item_id, company_id, [s.value for s in allowed]])

        row = await self.pool.fetchrow(query, *values)
        return _row_to_queue_item(row) if row else None

    async def delete_queue_item_if(
        self, company_id: str, item_id: str, allowed: Iterable[QueueStatus]
    ) -> bool:
        result = await self.pool.execute(
            "DELETE FROM ai_queue WHERE id = $1 AND company_id = $2 "
            "AND status = ANY($3::text[])",
            item_id, company_id, [s.value for s in allowed],
        )
        return _affected(result) > 0

    async def count_queue_items(
        self,
        company_id: str,
        statuses: Iterable[QueueStatus],
        updated_since: datetime | None = None,
    ) -> int:
        values = [s.value for s in statuses]
        if updated_since is not None:
            total = await self.pool.fetchval(
                "SELECT COUNT(*) FROM ai_queue WHERE company_id = $1 "
                "AND status = ANY($2::text[]) AND updated_at >= $3",
                company_id, values, _aware(updated_since),
            )
        else:
            total = await self.pool.fetchval(
                "SELECT COUNT(*) FROM ai_queue WHERE company_id = $1 "
                "AND status = ANY($2::text[])",
                company_id, values,
            )
        return int(total or 0)

    async def list_dispatch_candidates(
        self, company_id: str, now: datetime, limit: int = 100
    ) -> list[QueueItem]:
        rows = await self.pool.fetch(
            f"""
            SELECT q.*, {CONTACT_COLUMNS_SQL} FROM ai_queue q {_QUEUE_CONTACT_JOIN}
            WHERE q.company_id = $1
            AND q.status IN ('pending', 'retry_scheduled')
            AND q.attempts < q.max_attempts
            AND (q.scheduled_at IS NULL OR q.scheduled_at <= $2)
            ORDER BY {QUEUE_ORDER_SQL}
            LIMIT $3
            """,
            company_id, _aware(now), limit,
        )
        return [_row_to_queue_item(r) for r in rows]

    async def get_distinct_companies(self) -> list[str]:
        rows = await self.pool.fetch(
            "SELECT DISTINCT company_id FROM company_members ORDER BY company_id"
        )
        return [r["company_id"] for r in rows]

    # -----------------------------------------------------------------------
    # Pipeline
    # -----------------------------------------------------------------------

    async def create_stage(self, stage: PipelineStage) -> PipelineStage:
        row = await self.pool.fetchrow(
            """
            INSERT INTO pipeline_stages (
                id, company_id, name, slug, color, position, is_closed_won, is_closed_lost
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING *
            """,
            stage.id, stage.company_id, stage.name, stage.slug, stage.color,
            stage.position, stage.is_closed_won, stage.is_closed_lost,
        )
        return _row_to_stage(row)

    async def list_stages(self, company_id: str) -> list[PipelineStage]:
        rows = await self.pool.fetch(
            "SELECT * FROM pipeline_stages WHERE company_id = $1 ORDER BY position ASC",
            company_id,
        )
        return [_row_to_stage(r) for r in rows]

    async def get_stage(self, company_id: str, stage_id: str) -> PipelineStage | None:
        row = await self.pool.fetchrow(
            "SELECT * FROM pipeline_stages WHERE id = $1 AND company_id = $2",
            stage_id, company_id,
        )
        return _row_to_stage(row) if row else None

    async def create_deal(self, deal: Deal) -> Deal:
        row = await self.pool.fetchrow(
            """
            INSERT INTO deals (
                id, company_id, stage_id, contact_id, title, value, priority, source,
                expected_close_date, notes, created_by, assigned_to, closed_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            RETURNING id
            """,
            deal.id, deal.company_id, deal.stage_id, deal.contact_id, deal.title,
            deal.value, deal.priority.value, deal.source.value,
            deal.expected_close_date, deal.notes, deal.created_by,
            deal.assigned_to, _aware(deal.closed_at),
        )
        result = await self.get_deal(deal.company_id, row["id"])
        assert result is not None
        return result

    async def get_deal(self, company_id: str, deal_id: str) -> Deal | None:
        row = await self.pool.fetchrow(
            f"SELECT d.*, {CONTACT_COLUMNS_SQL} FROM deals d {_DEAL_CONTACT_JOIN} "
            f"WHERE d.id = $1 AND d.company_id = $2",
            deal_id, company_id,
        )
        return _row_to_deal(row) if row else None

    async def update_deal_stage(
        self,
        company_id: str,
        deal_id: str,
        stage_id: str,
        closed_at: datetime | None,
    ) -> Deal | None:
        row = await self.pool.fetchrow(
            """
            UPDATE deals SET stage_id = $1, closed_at = $2, updated_at = $3
            WHERE id = $4 AND company_id = $5
            RETURNING *
            """,
            stage_id, _aware(closed_at), _now(), deal_id, company_id,
        )
        return _row_to_deal(row) if row else None

    async def delete_deal(self, company_id: str, deal_id: str) -> bool:
        result = await self.pool.execute(
            "DELETE FROM deals WHERE id = $1 AND company_id = $2",
            deal_id, company_id,
        )
        return _affected(result) > 0

    async def list_deals(self, company_id: str, filters: DealFilters | None = None) -> list[Deal]:
        f = filters or DealFilters()
        where_clauses = ["d.company_id = $1"]
        params: list[Any] = [company_id]

        def _add(clause: str, value: Any) -> None:
            params.append(value)
            where_clauses.append(clause.format(n=len(params)))

        if f.stage_id:
            _add("d.stage_id = ${n}", f.stage_id)
        if f.priority:
            _add("d.priority = ${n}", f.priority.value)
        if f.source:
            _add("d.source = ${n}", f.source.value)
        if f.created_since:
            _add("d.created_at >= ${n}", _aware(f.created_since))
        if f.search:
            _add("d.title ILIKE ${n}", f"%{f.search}%")

        params.append(f.limit)
        rows = await self.pool.fetch(
            f"SELECT d.*, {CONTACT_COLUMNS_SQL} FROM deals d {_DEAL_CONTACT_JOIN} "
            f"WHERE {' AND '.join(where_clauses)} "
            f"ORDER BY d.created_at DESC LIMIT ${len(params)}",
            *params,
        )
        return [_row_to_deal(r) for r in rows]

    # -----------------------------------------------------------------------
    # Activity log
    # -----------------------------------------------------------------------

    async def insert_activity(self, entry: ActivityEntry) -> None:
        await self.pool.execute(
            """
            INSERT INTO activity_log (
                company_id, user_id, entity_type, entity_id, action, old_value, new_value
            ) VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            entry.company_id, entry.user_id, entry.entity_type.value,
            entry.entity_id, entry.action,
            json.dumps(entry.old_value) if entry.old_value is not None else None,
            json.dumps(entry.new_value) if entry.new_value is not None else None,
        )

    async def list_activity(
        self,
        company_id: str,
        entity_type: EntityType | None = None,
        entity_id: str | None = None,
        limit: int = 50,
    ) -> list[ActivityEntry]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM activity_log
            WHERE company_id = $1
            AND ($2::text IS NULL OR entity_type = $2)
            AND ($3::text IS NULL OR entity_id = $3)
            ORDER BY id DESC
            LIMIT $4
            """,
            company_id,
            entity_type.value if entity_type else None,
            entity_id, limit,
        )
        return [_row_to_activity(r) for r in rows]
