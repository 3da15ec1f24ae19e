"""Data access for settings and the guard event history."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from power_guard.devices.base import NotificationEvent, SettingsCallback

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Repository:
    """Centralised data access for all tables."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    # ── Settings ────────────────────────────────────────────

    async def get_setting(self, key: str) -> Any:
        async with self.db.execute(
            "SELECT value_json FROM settings WHERE key = ?", (key,),
        ) as cursor:
            row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def set_setting(self, key: str, value: Any) -> None:
        await self.db.execute(
            """INSERT INTO settings (key, value_json, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json,
                                              updated_at = excluded.updated_at""",
            (key, json.dumps(value), _now()),
        )
        await self.db.commit()

    async def delete_setting(self, key: str) -> None:
        await self.db.execute("DELETE FROM settings WHERE key = ?", (key,))
        await self.db.commit()

    async def get_all_settings(self) -> dict[str, Any]:
        async with self.db.execute("SELECT key, value_json FROM settings ORDER BY key") as cursor:
            rows = await cursor.fetchall()
        return {r[0]: json.loads(r[1]) for r in rows}

    # ── Guard events ────────────────────────────────────────

    async def store_event(self, event: str, tokens: dict[str, Any] | None = None) -> int:
        async with self.db.execute(
            "INSERT INTO guard_events (event, tokens_json, recorded_at) VALUES (?, ?, ?)",
            (event, json.dumps(tokens) if tokens else None, _now()),
        ) as cursor:
            row_id = cursor.lastrowid
        await self.db.commit()
        return row_id  # type: ignore[return-value]

    async def get_recent_events(self, limit: int = 50) -> list[dict[str, Any]]:
        async with self.db.execute(
            "SELECT * FROM guard_events ORDER BY id DESC LIMIT ?", (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
        events = []
        for r in rows:
            item = dict(r)
            item["tokens"] = json.loads(item.pop("tokens_json") or "{}")
            events.append(item)
        return events

    async def prune_events(self, keep: int = 1000) -> int:
        async with self.db.execute(
            "DELETE FROM guard_events WHERE id NOT IN "
            "(SELECT id FROM guard_events ORDER BY id DESC LIMIT ?)",
            (keep,),
        ) as cursor:
            deleted = cursor.rowcount
        await self.db.commit()
        return deleted


class SqliteSettingsStore:
    """SettingsStore backed by the settings table; values are stored as JSON."""

    def __init__(self, repo: Repository) -> None:
        self._repo = repo
        self._listeners: dict[str, list[SettingsCallback]] = {}

    async def get(self, key: str) -> Any:
        return await self._repo.get_setting(key)

    async def set(self, key: str, value: Any) -> None:
        await self._repo.set_setting(key, value)
        for callback in list(self._listeners.get(key, [])):
            try:
                callback(key, value)
            except Exception:
                logger.exception("Settings listener error for '%s'", key)

    def on_change(self, key: str, callback: SettingsCallback) -> None:
        self._listeners.setdefault(key, []).append(callback)


class EventHistorySink:
    """NotificationSink that records every guard event in the database."""

    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    async def emit(self, event: NotificationEvent, tokens: dict[str, Any]) -> None:
        try:
            await self._repo.store_event(event.value, tokens)
        except aiosqlite.Error as e:
            logger.warning("Failed to record event %s: %s", event.value, e)
