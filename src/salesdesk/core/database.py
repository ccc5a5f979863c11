"""Database connection and CRUD operations - SQLite backend.

Zero-install database backend using aiosqlite. Auto-creates schema on connect.
Queue state transitions are single conditional statements so that concurrent
callers sharing the store cannot both win the same transition.
"""

from __future__ import annotations

import enum
import json
import sqlite3
from collections.abc import Iterable
from datetime import date, datetime, timezone
from typing import Any

import aiosqlite

from salesdesk.core.config import Settings
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


# ---------------------------------------------------------------------------
# SQLite schema (auto-created on first connect)
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS company_members (
    user_id             TEXT NOT NULL,
    company_id          TEXT NOT NULL,
    role                TEXT NOT NULL DEFAULT 'member',
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (user_id, company_id)
);

CREATE TABLE IF NOT EXISTS contacts (
    id                  TEXT PRIMARY KEY,
    company_id          TEXT NOT NULL,
    first_name          TEXT,
    last_name           TEXT,
    phone               TEXT NOT NULL DEFAULT '',
    business_name       TEXT,
    status              TEXT NOT NULL DEFAULT 'new',
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS ai_queue (
    id                  TEXT PRIMARY KEY,
    company_id          TEXT NOT NULL,
    contact_id          TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    status              TEXT NOT NULL DEFAULT 'pending',
    priority            TEXT NOT NULL DEFAULT 'normal',
    attempts            INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
    max_attempts        INTEGER NOT NULL DEFAULT 3 CHECK (max_attempts >= 1),
    scheduled_at        TEXT,
    last_attempt_at     TEXT,
    outcome             TEXT,
    notes               TEXT,
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT NOT NULL DEFAULT (datetime('now')),
    CHECK (attempts <= max_attempts)
);

CREATE TABLE IF NOT EXISTS pipeline_stages (
    id                  TEXT PRIMARY KEY,
    company_id          TEXT NOT NULL,
    name                TEXT NOT NULL,
    slug                TEXT NOT NULL,
    color               TEXT NOT NULL DEFAULT '#6b7280',
    position            INTEGER NOT NULL DEFAULT 0,
    is_closed_won       INTEGER NOT NULL DEFAULT 0,
    is_closed_lost      INTEGER NOT NULL DEFAULT 0,
    UNIQUE (company_id, slug)
);

CREATE TABLE IF NOT EXISTS deals (
    id                  TEXT PRIMARY KEY,
    company_id          TEXT NOT NULL,
    stage_id            TEXT NOT NULL REFERENCES pipeline_stages(id),
    contact_id          TEXT REFERENCES contacts(id) ON DELETE SET NULL,
    title               TEXT NOT NULL,
    value               REAL NOT NULL DEFAULT 0,
    priority            TEXT NOT NULL DEFAULT 'warm',
    source              TEXT NOT NULL DEFAULT 'manual',
    expected_close_date TEXT,
    notes               TEXT,
    created_by          TEXT,
    assigned_to         TEXT,
    closed_at           TEXT,
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS activity_log (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    company_id          TEXT NOT NULL,
    user_id             TEXT,
    entity_type         TEXT NOT NULL,
    entity_id           TEXT NOT NULL,
    action              TEXT NOT NULL,
    old_value           TEXT,
    new_value           TEXT,
    created_at          TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_ai_queue_active_contact
    ON ai_queue(company_id, contact_id)
    WHERE status IN ('pending', 'in_progress', 'retry_scheduled');
CREATE INDEX IF NOT EXISTS idx_members_user ON company_members(user_id);
CREATE INDEX IF NOT EXISTS idx_contacts_company ON contacts(company_id);
CREATE INDEX IF NOT EXISTS idx_contacts_status ON contacts(company_id, status, updated_at);
CREATE INDEX IF NOT EXISTS idx_ai_queue_company_status ON ai_queue(company_id, status);
CREATE INDEX IF NOT EXISTS idx_ai_queue_order ON ai_queue(company_id, priority, created_at);
CREATE INDEX IF NOT EXISTS idx_stages_company ON pipeline_stages(company_id, position);
CREATE INDEX IF NOT EXISTS idx_deals_company_stage ON deals(company_id, stage_id);
CREATE INDEX IF NOT EXISTS idx_activity_entity ON activity_log(company_id, entity_type, entity_id);
"""

# Dispatch order: high before normal, then oldest first. Queries alias ai_queue as q.
QUEUE_ORDER_SQL = (
    "CASE q.priority WHEN 'high' THEN 0 ELSE 1 END ASC, q.created_at ASC, q.id ASC"
)

# Contact columns joined onto queue and deal listings (contacts aliased as c)
CONTACT_COLUMNS_SQL = (
    "c.first_name AS contact_first_name, c.last_name AS contact_last_name, "
    "c.phone AS contact_phone, c.business_name AS contact_business_name"
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dt_str(dt: datetime | None) -> str | None:
    """Fixed-width UTC ISO string so stored timestamps compare lexically."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_str() -> str:
    return _dt_str(_now())  # type: ignore[return-value]


def _db_value(val: Any) -> Any:
    if isinstance(val, enum.Enum):
        return val.value
    if isinstance(val, datetime):
        return _dt_str(val)
    if isinstance(val, date):
        return val.isoformat()
    if isinstance(val, bool):
        return int(val)
    if isinstance(val, dict):
        return json.dumps(val)
    return val


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    """Convert sqlite3.Row to a plain dict."""
    return {k: row[k] for k in row.keys()}


def _row_to_queue_item(row: sqlite3.Row) -> QueueItem:
    d = _row_to_dict(row)
    d["contact"] = ContactSummary.pop_from_row(d)
    return QueueItem(**d)


def _row_to_stage(row: sqlite3.Row) -> PipelineStage:
    return PipelineStage(**_row_to_dict(row))


def _row_to_deal(row: sqlite3.Row) -> Deal:
    d = _row_to_dict(row)
    d["contact"] = ContactSummary.pop_from_row(d)
    return Deal(**d)


def _row_to_activity(row: sqlite3.Row) -> ActivityEntry:
    d = _row_to_dict(row)
    d["id"] = str(d["id"])
    for key in ("old_value", "new_value"):
        if d.get(key):
            d[key] = json.loads(d[key])
    return ActivityEntry(**d)


# ---------------------------------------------------------------------------
# Database class
# ---------------------------------------------------------------------------


class NotConnectedError(RuntimeError):
    """Raised when a backend is used before connect() or after close()."""


class Database:
    """Async SQLite database connection manager and CRUD operations."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._conn: aiosqlite.Connection | None = None

    def _resolve_path(self) -> str:
        url = self.settings.database_url
        if url.startswith("sqlite:///"):
            return url[len("sqlite:///"):]
        if url.startswith("sqlite://"):
            return url[len("sqlite://"):]
        return self.settings.sqlite_path

    async def connect(self) -> None:
        path = self._resolve_path()
        self._conn = await aiosqlite.connect(path)
        self._conn.row_factory = sqlite3.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._init_schema()

    async def _init_schema(self) -> None:
        """Auto-create tables if they don't exist."""
        await self.conn.executescript(SCHEMA_SQL)
        await self.conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise NotConnectedError("Database not connected. Call connect() first.")
        return self._conn

    # -----------------------------------------------------------------------
    # Tenancy and contacts
    # -----------------------------------------------------------------------

    async def add_member(self, member: CompanyMember) -> None:
        await self.conn.execute(
            "INSERT OR IGNORE INTO company_members (user_id, company_id, role, created_at) "
            "VALUES (?, ?, ?, ?)",
            (member.user_id, member.company_id, member.role, _now_str()),
        )
        await self.conn.commit()

    async def get_member_company(self, user_id: str) -> str | None:
        """First company the user belongs to."""
        cursor = await self.conn.execute(
            "SELECT company_id FROM company_members WHERE user_id = ? "
            "ORDER BY created_at ASC LIMIT 1",
            (user_id,),
        )
        row = await cursor.fetchone()
        return row["company_id"] if row else None

    async def create_contact(self, contact: Contact) -> Contact:
        now = _now_str()
        await self.conn.execute(
            """
            INSERT INTO contacts (
                id, company_id, first_name, last_name, phone, business_name, status,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                contact.id, contact.company_id, contact.first_name, contact.last_name,
                contact.phone, contact.business_name, contact.status.value,
                _dt_str(contact.created_at) or now, _dt_str(contact.updated_at) or now,
            ),
        )
        await self.conn.commit()
        result = await self.get_contact(contact.company_id, contact.id)
        assert result is not None
        return result

    async def get_contact(self, company_id: str, contact_id: str) -> Contact | None:
        cursor = await self.conn.execute(
            "SELECT * FROM contacts WHERE id = ? AND company_id = ?",
            (contact_id, company_id),
        )
        row = await cursor.fetchone()
        return Contact(**_row_to_dict(row)) if row else None

    async def filter_company_contacts(
        self, company_id: str, contact_ids: list[str]
    ) -> list[str]:
        """Return the subset of contact_ids that belong to the company."""
        if not contact_ids:
            return []
        cursor = await self.conn.execute(
            f"SELECT id FROM contacts WHERE company_id = ? "
            f"AND id IN ({_placeholders(contact_ids)})",
            [company_id, *contact_ids],
        )
        rows = await cursor.fetchall()
        return [r["id"] for r in rows]

    async def list_contacts_by_status(
        self, company_id: str, statuses: Iterable[ContactStatus], limit: int = 500
    ) -> list[Contact]:
        """Contacts in the given statuses, most recently updated first."""
        values = [s.value for s in statuses]
        cursor = await self.conn.execute(
            f"SELECT * FROM contacts WHERE company_id = ? "
            f"AND status IN ({_placeholders(values)}) "
            f"ORDER BY updated_at DESC, id ASC LIMIT ?",
            [company_id, *values, limit],
        )
        rows = await cursor.fetchall()
        return [Contact(**_row_to_dict(r)) for r in rows]

    async def update_contact_status(
        self, company_id: str, contact_id: str, status: ContactStatus
    ) -> Contact | None:
        cursor = await self.conn.execute(
            "UPDATE contacts SET status = ?, updated_at = ? WHERE id = ? AND company_id = ?",
            (status.value, _now_str(), contact_id, company_id),
        )
        updated = cursor.rowcount > 0
        await self.conn.commit()
        if not updated:
            return None
        return await self.get_contact(company_id, contact_id)

    # -----------------------------------------------------------------------
    # AI queue
    # -----------------------------------------------------------------------

    async def insert_queue_item(self, item: QueueItem) -> bool:
        """Insert a queue item. Returns False if the contact is already active."""
        now = _now_str()
        cursor = await self.conn.execute(
            """
            INSERT OR IGNORE INTO ai_queue (
                id, company_id, contact_id, status, priority, attempts, max_attempts,
                scheduled_at, last_attempt_at, outcome, notes, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.id, item.company_id, item.contact_id,
                item.status.value, item.priority.value,
                item.attempts, item.max_attempts,
                _dt_str(item.scheduled_at), _dt_str(item.last_attempt_at),
                item.outcome.value if item.outcome else None, item.notes,
                _dt_str(item.created_at) or now, now,
            ),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def get_queue_item(self, company_id: str, item_id: str) -> QueueItem | None:
        cursor = await self.conn.execute(
            f"SELECT q.*, {CONTACT_COLUMNS_SQL} FROM ai_queue q "
            f"LEFT JOIN contacts c ON c.id = q.contact_id AND c.company_id = q.company_id "
            f"WHERE q.id = ? AND q.company_id = ?",
            (item_id, company_id),
        )
        row = await cursor.fetchone()
        return _row_to_queue_item(row) if row else None

    async def list_queue_items(
        self,
        company_id: str,
        status: QueueStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[QueueItem]:
        """Tenant queue listing in dispatch order."""
        where = "WHERE q.company_id = ?"
        params: list[Any] = [company_id]
        if status is not None:
            where += " AND q.status = ?"
            params.append(status.value)
        cursor = await self.conn.execute(
            f"SELECT q.*, {CONTACT_COLUMNS_SQL} FROM ai_queue q "
            f"LEFT JOIN contacts c ON c.id = q.contact_id AND c.company_id = q.company_id "
            f"{where} ORDER BY {QUEUE_ORDER_SQL} LIMIT ? OFFSET ?",
            params + [limit, offset],
        )
        rows = await cursor.fetchall()
        return [_row_to_queue_item(r) for r in rows]

    async def get_active_contact_ids(
        self, company_id: str, contact_ids: list[str]
    ) -> set[str]:
        if not contact_ids:
            return set()
        cursor = await self.conn.execute(
            f"""
            SELECT contact_id FROM ai_queue
            WHERE company_id = ?
            AND contact_id IN ({_placeholders(contact_ids)})
            AND status IN ('pending', 'in_progress', 'retry_scheduled')
            """,
            [company_id, *contact_ids],
        )
        rows = await cursor.fetchall()
        return {r["contact_id"] for r in rows}

    async def claim_queue_item(
        self,
        company_id: str,
        item_id: str,
        now: datetime,
        allowed: Iterable[QueueStatus],
    ) -> QueueItem | None:
        """Atomically move an item in one of the allowed statuses to in_progress.

        Returns the claimed item, or None if the guard did not match.
        """
        ts = _dt_str(now)
        statuses = [s.value for s in allowed]
        cursor = await self.conn.execute(
            f"""
            UPDATE ai_queue
            SET status = 'in_progress',
                attempts = attempts + 1,
                last_attempt_at = ?,
                updated_at = ?
            WHERE id = ? AND company_id = ?
            AND status IN ({_placeholders(statuses)})
            AND attempts < max_attempts
            """,
            [ts, ts, item_id, company_id, *statuses],
        )
        claimed = cursor.rowcount > 0
        await self.conn.commit()
        if not claimed:
            return None
        return await self.get_queue_item(company_id, item_id)

    async def update_queue_item_if(
        self,
        company_id: str,
        item_id: str,
        allowed: Iterable[QueueStatus],
        **fields: Any,
    ) -> QueueItem | None:
        """Update fields only while the item is in one of the allowed statuses."""
        statuses = [s.value for s in allowed]
        set_clauses = []
        values: list[Any] = []
        for key, val in fields.items():
            set_clauses.append(f"{key} = ?")
            values.append(_db_value(val))

        # Always bump updated_at
        set_clauses.append("updated_at = ?")
        values.append(_now_str())

        query = (
            f"UPDATE ai_queue SET {', '.join(set_clauses)} "
            f"WHERE id = ? AND company_id = ? AND status IN ({_placeholders(statuses)})"
        )
        cursor = await self.conn.execute(query, [*values, item_id, company_id, *statuses])
        updated = cursor.rowcount > 0
        await self.conn.commit()
        if not updated:
            return None
        return await self.get_queue_item(company_id, item_id)

    async def delete_queue_item_if(
        self, company_id: str, item_id: str, allowed: Iterable[QueueStatus]
    ) -> bool:
        statuses = [s.value for s in allowed]
        cursor = await self.conn.execute(
            f"DELETE FROM ai_queue WHERE id = ? AND company_id = ? "
            f"AND status IN ({_placeholders(statuses)})",
            [item_id, company_id, *statuses],
        )
        deleted = cursor.rowcount > 0
        await self.conn.commit()
        return deleted

    async def count_queue_items(
        self,
        company_id: str,
        statuses: Iterable[QueueStatus],
        updated_since: datetime | None = None,
    ) -> int:
        values = [s.value for s in statuses]
        query = (
            f"SELECT COUNT(*) AS total FROM ai_queue WHERE company_id = ? "
            f"AND status IN ({_placeholders(values)})"
        )
        params: list[Any] = [company_id, *values]
        if updated_since is not None:
            query += " AND updated_at >= ?"
            params.append(_dt_str(updated_since))
        cursor = await self.conn.execute(query, params)
        row = await cursor.fetchone()
        return row["total"] if row else 0

    async def list_dispatch_candidates(
        self, company_id: str, now: datetime, limit: int = 100
    ) -> list[QueueItem]:
        """Items that may be dispatched right now, in dispatch order."""
        cursor = await self.conn.execute(
            f"""
            SELECT q.*, {CONTACT_COLUMNS_SQL} FROM ai_queue q
            LEFT JOIN contacts c ON c.id = q.contact_id AND c.company_id = q.company_id
            WHERE q.company_id = ?
            AND q.status IN ('pending', 'retry_scheduled')
            AND q.attempts < q.max_attempts
            AND (q.scheduled_at IS NULL OR q.scheduled_at <= ?)
            ORDER BY {QUEUE_ORDER_SQL}
            LIMIT ?
            """,
            (company_id, _dt_str(now), limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_queue_item(r) for r in rows]

    async def get_distinct_companies(self) -> list[str]:
        cursor = await self.conn.execute(
            "SELECT DISTINCT company_id FROM company_members ORDER BY company_id"
        )
        rows = await cursor.fetchall()
        return [r["company_id"] for r in rows]

    # -----------------------------------------------------------------------
    # Pipeline
    # -----------------------------------------------------------------------

    async def create_stage(self, stage: PipelineStage) -> PipelineStage:
        await self.conn.execute(
            """
            INSERT INTO pipeline_stages (
                id, company_id, name, slug, color, position, is_closed_won, is_closed_lost
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stage.id, stage.company_id, stage.name, stage.slug, stage.color,
                stage.position, int(stage.is_closed_won), int(stage.is_closed_lost),
            ),
        )
        await self.conn.commit()
        result = await self.get_stage(stage.company_id, stage.id)
        assert result is not None
        return result

    async def list_stages(self, company_id: str) -> list[PipelineStage]:
        cursor = await self.conn.execute(
            "SELECT * FROM pipeline_stages WHERE company_id = ? ORDER BY position ASC",
            (company_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_stage(r) for r in rows]

    async def get_stage(self, company_id: str, stage_id: str) -> PipelineStage | None:
        cursor = await self.conn.execute(
            "SELECT * FROM pipeline_stages WHERE id = ? AND company_id = ?",
            (stage_id, company_id),
        )
        row = await cursor.fetchone()
        return _row_to_stage(row) if row else None

    async def create_deal(self, deal: Deal) -> Deal:
        now = _now_str()
        await self.conn.execute(
            """
            INSERT INTO deals (
                id, company_id, stage_id, contact_id, title, value, priority, source,
                expected_close_date, notes, created_by, assigned_to, closed_at,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                deal.id, deal.company_id, deal.stage_id, deal.contact_id, deal.title,
                deal.value, deal.priority.value, deal.source.value,
                _db_value(deal.expected_close_date), deal.notes, deal.created_by,
                deal.assigned_to, _dt_str(deal.closed_at),
                _dt_str(deal.created_at) or now, now,
            ),
        )
        await self.conn.commit()
        result = await self.get_deal(deal.company_id, deal.id)
        assert result is not None
        return result

    async def get_deal(self, company_id: str, deal_id: str) -> Deal | None:
        cursor = await self.conn.execute(
            f"SELECT d.*, {CONTACT_COLUMNS_SQL} FROM deals d "
            f"LEFT JOIN contacts c ON c.id = d.contact_id AND c.company_id = d.company_id "
            f"WHERE d.id = ? AND d.company_id = ?",
            (deal_id, company_id),
        )
        row = await cursor.fetchone()
        return _row_to_deal(row) if row else None

    async def update_deal_stage(
        self,
        company_id: str,
        deal_id: str,
        stage_id: str,
        closed_at: datetime | None,
    ) -> Deal | None:
        cursor = await self.conn.execute(
            "UPDATE deals SET stage_id = ?, closed_at = ?, updated_at = ? "
            "WHERE id = ? AND company_id = ?",
            (stage_id, _dt_str(closed_at), _now_str(), deal_id, company_id),
        )
        updated = cursor.rowcount > 0
        await self.conn.commit()
        if not updated:
            return None
        return await self.get_deal(company_id, deal_id)

    async def delete_deal(self, company_id: str, deal_id: str) -> bool:
        cursor = await self.conn.execute(
            "DELETE FROM deals WHERE id = ? AND company_id = ?",
            (deal_id, company_id),
        )
        deleted = cursor.rowcount > 0
        await self.conn.commit()
        return deleted

    async def list_deals(self, company_id: str, filters: DealFilters | None = None) -> list[Deal]:
        f = filters or DealFilters()
        where_clauses = ["d.company_id = ?"]
        params: list[Any] = [company_id]

        if f.stage_id:
            where_clauses.append("d.stage_id = ?")
            params.append(f.stage_id)
        if f.priority:
            where_clauses.append("d.priority = ?")
            params.append(f.priority.value)
        if f.source:
            where_clauses.append("d.source = ?")
            params.append(f.source.value)
        if f.created_since:
            where_clauses.append("d.created_at >= ?")
            params.append(_dt_str(f.created_since))
        if f.search:
            where_clauses.append("LOWER(d.title) LIKE ?")
            params.append(f"%{f.search.lower()}%")

        cursor = await self.conn.execute(
            f"SELECT d.*, {CONTACT_COLUMNS_SQL} FROM deals d "
            f"LEFT JOIN contacts c ON c.id = d.contact_id AND c.company_id = d.company_id "
            f"WHERE {' AND '.join(where_clauses)} "
            f"ORDER BY d.created_at DESC LIMIT ?",
            params + [f.limit],
        )
        rows = await cursor.fetchall()
        return [_row_to_deal(r) for r in rows]

    # -----------------------------------------------------------------------
    # Activity log
    # -----------------------------------------------------------------------

    async def insert_activity(self, entry: ActivityEntry) -> None:
        await self.conn.execute(
            """
            INSERT INTO activity_log (
                company_id, user_id, entity_type, entity_id, action,
                old_value, new_value, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.company_id,
                entry.user_id,
                entry.entity_type.value,
                entry.entity_id,
                entry.action,
                json.dumps(entry.old_value) if entry.old_value is not None else None,
                json.dumps(entry.new_value) if entry.new_value is not None else None,
                _now_str(),
            ),
        )
        await self.conn.commit()

    async def list_activity(
        self,
        company_id: str,
        entity_type: EntityType | None = None,
        entity_id: str | None = None,
        limit: int = 50,
    ) -> list[ActivityEntry]:
        where_clauses = ["company_id = ?"]
        params: list[Any] = [company_id]
        if entity_type:
            where_clauses.append("entity_type = ?")
            params.append(entity_type.value)
        if entity_id:
            where_clauses.append("entity_id = ?")
            params.append(entity_id)
        cursor = await self.conn.execute(
            f"SELECT * FROM activity_log WHERE {' AND '.join(where_clauses)} "
            f"ORDER BY id DESC LIMIT ?",
            params + [limit],
        )
        rows = await cursor.fetchall()
        return [_row_to_activity(r) for r in rows]
