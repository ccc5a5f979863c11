"""Initialize the salesdesk database by running the migration."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import asyncpg

from salesdesk.core.config import Settings
from salesdesk.core.db_factory import backend_name, create_database

logger = logging.getLogger(__name__)

MIGRATION_PATH = (
    Path(__file__).parent.parent.parent.parent / "migrations" / "001_salesdesk_schema.sql"
)


async def run_migration() -> None:
    settings = Settings()

    if backend_name(settings) == "sqlite":
        # The SQLite backend creates its schema on connect
        db = create_database(settings)
        await db.connect()
        await db.close()
        print(f"SQLite schema ready: {settings.sqlite_path}")
        return

    if not MIGRATION_PATH.exists():
        print(f"Migration file not found: {MIGRATION_PATH}")
        return

    sql = MIGRATION_PATH.read_text(encoding="utf-8")

    # Connect to default database to create the target database if needed
    base_url = settings.database_url.rsplit("/", 1)[0]
    db_name = settings.database_url.rsplit("/", 1)[1]

    try:
        conn = await asyncpg.connect(f"{base_url}/postgres")
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", db_name
            )
            if not exists:
                await conn.execute(f'CREATE DATABASE "{db_name}"')
                print(f"Created database: {db_name}")
            else:
                print(f"Database already exists: {db_name}")
        finally:
            await conn.close()
    except (asyncpg.PostgresError, OSError) as e:
        logger.warning("Could not create database (may already exist): %s", e)

    conn = await asyncpg.connect(settings.database_url)
    try:
        await conn.execute(sql)
        print("Migration completed successfully.")
    finally:
        await conn.close()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    asyncio.run(run_migration())


if __name__ == "__main__":
    main()
