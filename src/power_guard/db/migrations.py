"""Database schema migrations."""

from __future__ import annotations

import logging

import aiosqlite

from power_guard.db.models import MIGRATIONS, SCHEMA_VERSION

logger = logging.getLogger(__name__)


async def run_migrations(db: aiosqlite.Connection) -> int:
    """Apply every step above the stored version. Returns the number applied."""
    current = await get_schema_version(db)
    if current > SCHEMA_VERSION:
        raise RuntimeError(
            f"Database schema version {current} is newer than supported version {SCHEMA_VERSION}"
        )

    pending = [v for v in sorted(MIGRATIONS) if v > current]
    for version in pending:
        logger.info("Applying schema migration %d", version)
        for statement in MIGRATIONS[version]:
            await db.execute(statement)
        await db.execute(
            "INSERT OR REPLACE INTO schema_version (id, version) VALUES (1, ?)",
            (version,),
        )
        await db.commit()
    if not pending:
        logger.debug("Database schema is up to date (version %d)", current)
    return len(pending)


async def get_schema_version(db: aiosqlite.Connection) -> int:
    """Current schema version, 0 if the schema does not exist yet."""
    try:
        async with db.execute("SELECT version FROM schema_version WHERE id = 1") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0
    except aiosqlite.OperationalError:
        return 0
