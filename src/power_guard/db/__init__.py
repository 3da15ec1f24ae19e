"""Database engine and repository for Power Guard."""

from power_guard.db.engine import close_db, get_db, init_db
from power_guard.db.repository import Repository, SqliteSettingsStore

__all__ = ["close_db", "get_db", "init_db", "Repository", "SqliteSettingsStore"]
