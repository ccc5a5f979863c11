"""Append-only activity log for queue and pipeline changes."""

from __future__ import annotations

import logging
from typing import Any

from salesdesk.core.database import Database
from salesdesk.core.database_pg import PostgresDatabase
from salesdesk.core.models import ActivityEntry, EntityType

logger = logging.getLogger(__name__)


class ActivityLog:
    def __init__(self, db: Database | PostgresDatabase):
        self.db = db

    async def record(
        self,
        company_id: str,
        entity_type: EntityType,
        entity_id: str,
        action: str,
        user_id: str | None = None,
        old_value: dict[str, Any] | None = None,
        new_value: dict[str, Any] | None = None,
    ) -> None:
        await self.db.insert_activity(
            ActivityEntry(
                company_id=company_id,
                user_id=user_id,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                old_value=old_value,
                new_value=new_value,
            )
        )
        logger.debug("Activity %s %s/%s", action, entity_type.value, entity_id)

    async def recent(
        self,
        company_id: str,
        entity_type: EntityType | None = None,
        entity_id: str | None = None,
        limit: int = 50,
    ) -> list[ActivityEntry]:
        return await self.db.list_activity(company_id, entity_type, entity_id, limit)
