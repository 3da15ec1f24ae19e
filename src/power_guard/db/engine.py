"""SQLite connection for the settings store and event history (WAL mode)."""

from __future__ import annotations

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from power_guard.db.migrations import run_migrations

logger = logging.getLogger(__name__)

_db: aiosqlite.Connection | None = None


async def _is_healthy(path: Path) -> bool:
    try:
        async with aiosqlite.connect(str(path)) as db:
            async with db.execute("PRAGMA quick_check") as cursor:
                rows = await cursor.fetchall()
    except aiosqlite.Error as e:
        logger.error("Database %s cannot be opened: %s", path, e)
        return False
    if len(rows) == 1 and str(rows[0][0]).lower() == "ok":
        return True
    logger.error("Database quick_check failed: %s", "; ".join(str(r[0]) for r in rows[:5]))
    return False


def _quarantine(path: Path) -> Path:
    """Move the database and its WAL files aside. Returns the new main file path."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    backup = path.with_suffix(f".corrupt-{stamp}.db")
    for suffix in ("", "-wal", "-shm"):
        src = path.parent / (path.name + suffix)
        if src.exists():
            shutil.move(str(src), str(path.parent / (backup.name + suffix)))
    logger.warning("Corrupt database moved to %s", backup)
    return backup


async def _salvage_settings(backup: Path, db: aiosqlite.Connection) -> int:
    """Copy readable settings rows (ledger, runtime overrides) into the fresh database.

    Event history is not carried over.
    """
    try:
        async with aiosqlite.connect(f"file:{backup}?mode=ro", uri=True) as old:
            async with old.execute("SELECT key, value_json, updated_at FROM settings") as cursor:
                rows = await cursor.fetchall()
    except aiosqlite.Error as e:
        logger.warning("No settings could be salvaged from %s: %s", backup.name, e)
        return 0
    await db.executemany(
        "INSERT OR REPLACE INTO settings (key, value_json, updated_at) VALUES (?, ?, ?)",
        rows,
    )
    await db.commit()
    logger.info("Salvaged %d setting(s) from the corrupt database", len(rows))
    return len(rows)


async def init_db(db_path: str | Path) -> aiosqlite.Connection:
    """Open the database, migrate it and make it the active connection.

    A database that fails its integrity check is quarantined and replaced;
    whatever settings rows are still readable are carried over.
    """
    global _db
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    backup = None
    if path.exists() and not await _is_healthy(path):
        backup = _quarantine(path)

    db = await aiosqlite.connect(str(path))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA synchronous=NORMAL")
    await db.execute("PRAGMA busy_timeout=5000")
    await run_migrations(db)
    if backup is not None:
        await _salvage_settings(backup, db)

    _db = db
    logger.info("Database ready at %s", path)
    return db


async def get_db() -> aiosqlite.Connection:
    """The active connection. Raises RuntimeError before init_db()."""
    if _db is None:
        raise RuntimeError("Database not initialised. Call init_db() first.")
    return _db


async def close_db() -> None:
    """Checkpoint the WAL and close the active connection, if any."""
    global _db
    if _db is None:
        return
    try:
        await _db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
    except aiosqlite.Error:
        logger.warning("WAL checkpoint failed on close", exc_info=True)
    await _db.close()
    _db = None
    logger.info("Database connection closed")
