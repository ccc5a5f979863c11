"""Storage backend selection."""

from __future__ import annotations

from typing import TYPE_CHECKING

from salesdesk.core.config import Settings

if TYPE_CHECKING:
    from salesdesk.core.database import Database
    from salesdesk.core.database_pg import PostgresDatabase


def backend_name(settings: Settings) -> str:
    return "sqlite" if settings.use_sqlite else "postgres"


def create_database(settings: Settings | None = None) -> Database | PostgresDatabase:
    """Build the configured backend. Nothing connects until connect() is awaited.

    SQLite (aiosqlite) is for local runs and tests; PostgreSQL (asyncpg) is
    the shared production store.
    """
    s = settings or Settings()
    if backend_name(s) == "sqlite":
        from salesdesk.core.database import Database
        return Database(s)
    from salesdesk.core.database_pg import PostgresDatabase
    return PostgresDatabase(s)
