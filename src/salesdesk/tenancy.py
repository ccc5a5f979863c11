"""Tenant resolution and the contact directory.

Authentication happens upstream; these collaborators only map an
authenticated user id to a company and scope contact ids to that company.
"""

from __future__ import annotations

from salesdesk.core.database import Database
from salesdesk.core.database_pg import PostgresDatabase


class NotAuthorizedError(Exception):
    """Raised when a principal has no company membership."""


class TenantResolver:
    def __init__(self, db: Database | PostgresDatabase):
        self.db = db

    async def resolve(self, user_id: str | None) -> str:
        """Return the company id for a user or raise NotAuthorizedError."""
        if not user_id:
            raise NotAuthorizedError("Not authenticated")
        company_id = await self.db.get_member_company(user_id)
        if company_id is None:
            raise NotAuthorizedError("No company access")
        return company_id


class ContactDirectory:
    def __init__(self, db: Database | PostgresDatabase):
        self.db = db

    async def filter_to_company(self, company_id: str, contact_ids: list[str]) -> set[str]:
        """Subset of contact_ids owned by the company."""
        return set(await self.db.filter_company_contacts(company_id, contact_ids))

    async def belongs_to(self, company_id: str, contact_id: str) -> bool:
        return await self.db.get_contact(company_id, contact_id) is not None
