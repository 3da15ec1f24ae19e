"""Tests for database engine and repository."""

from __future__ import annotations

from pathlib import Path

import aiosqlite
import pytest

from power_guard.db.engine import close_db, get_db, init_db
from power_guard.db.migrations import get_schema_version, run_migrations
from power_guard.db.models import MIGRATIONS, SCHEMA_VERSION
from power_guard.db.repository import EventHistorySink, Repository, SqliteSettingsStore
from power_guard.devices.base import NotificationEvent, SettingsStore


@pytest.mark.asyncio
class TestEngine:
    async def test_schema_created(self, db: aiosqlite.Connection) -> None:
        assert await get_schema_version(db) == SCHEMA_VERSION
        async with db.execute("PRAGMA journal_mode") as cursor:
            row = await cursor.fetchone()
        assert row[0].lower() == "wal"

    async def test_get_db_returns_active_connection(self, db: aiosqlite.Connection) -> None:
        assert await get_db() is db

    async def test_get_db_before_init(self) -> None:
        await close_db()
        with pytest.raises(RuntimeError):
            await get_db()

    async def test_reopen_keeps_settings(self, tmp_path: Path) -> None:
        path = tmp_path / "guard.db"
        repo = Repository(await init_db(path))
        await repo.set_setting("profile", "strict")
        await close_db()

        repo = Repository(await init_db(path))
        assert await repo.get_setting("profile") == "strict"
        await close_db()

    async def test_corrupt_database_replaced(self, tmp_path: Path) -> None:
        path = tmp_path / "guard.db"
        path.write_bytes(b"this is not a sqlite database" * 100)

        db = await init_db(path)

        assert await get_schema_version(db) == SCHEMA_VERSION
        assert list(tmp_path.glob("guard.corrupt-*.db"))
        await close_db()


@pytest.mark.asyncio
class TestMigrations:
    async def test_fresh_database_applies_all_steps(self, tmp_path: Path) -> None:
        async with aiosqlite.connect(str(tmp_path / "fresh.db")) as conn:
            assert await run_migrations(conn) == len(MIGRATIONS)
            assert await run_migrations(conn) == 0
            assert await get_schema_version(conn) == SCHEMA_VERSION

    async def test_upgrades_settings_only_database(self, tmp_path: Path) -> None:
        path = tmp_path / "guard.db"
        async with aiosqlite.connect(str(path)) as conn:
            for statement in MIGRATIONS[1]:
                await conn.execute(statement)
            await conn.execute("INSERT INTO schema_version (id, version) VALUES (1, 1)")
            await conn.execute(
                "INSERT INTO settings (key, value_json) VALUES ('profile', '\"solar\"')"
            )
            await conn.commit()

        repo = Repository(await init_db(path))

        assert await get_schema_version(await get_db()) == SCHEMA_VERSION
        assert await repo.get_setting("profile") == "solar"
        await repo.store_event("mitigation_cleared")
        assert len(await repo.get_recent_events()) == 1
        await close_db()

    async def test_newer_schema_rejected(self, tmp_path: Path) -> None:
        async with aiosqlite.connect(str(tmp_path / "future.db")) as conn:
            await run_migrations(conn)
            await conn.execute("UPDATE schema_version SET version = ? WHERE id = 1", (SCHEMA_VERSION + 1,))
            await conn.commit()
            with pytest.raises(RuntimeError):
                await run_migrations(conn)


@pytest.mark.asyncio
class TestRepository:
    async def test_settings_roundtrip(self, repo: Repository) -> None:
        ledger = [{"device_id": "heater", "action": "turn_off", "previous_state": {"onoff": True}}]
        await repo.set_setting("mitigated_devices", ledger)
        assert await repo.get_setting("mitigated_devices") == ledger

    async def test_setting_upsert(self, repo: Repository) -> None:
        await repo.set_setting("profile", "normal")
        await repo.set_setting("profile", "solar")
        assert await repo.get_all_settings() == {"profile": "solar"}

    async def test_missing_setting_is_none(self, repo: Repository) -> None:
        assert await repo.get_setting("nope") is None

    async def test_delete_setting(self, repo: Repository) -> None:
        await repo.set_setting("enabled", False)
        await repo.delete_setting("enabled")
        assert await repo.get_setting("enabled") is None

    async def test_events_newest_first(self, repo: Repository) -> None:
        await repo.store_event("mitigation_applied", {"device_name": "Heater", "action": "turn_off"})
        await repo.store_event("mitigation_cleared")

        events = await repo.get_recent_events()

        assert [e["event"] for e in events] == ["mitigation_cleared", "mitigation_applied"]
        assert events[0]["tokens"] == {}
        assert events[1]["tokens"]["device_name"] == "Heater"

    async def test_prune_events(self, repo: Repository) -> None:
        for i in range(5):
            await repo.store_event("power_limit_exceeded", {"power": 11000 + i})
        assert await repo.prune_events(keep=2) == 3
        events = await repo.get_recent_events()
        assert [e["tokens"]["power"] for e in events] == [11004, 11003]


@pytest.mark.asyncio
class TestSqliteSettingsStore:
    async def test_satisfies_protocol(self, repo: Repository) -> None:
        assert isinstance(SqliteSettingsStore(repo), SettingsStore)

    async def test_get_set_and_listen(self, repo: Repository) -> None:
        store = SqliteSettingsStore(repo)
        seen: list[tuple[str, object]] = []
        store.on_change("profile", lambda key, value: seen.append((key, value)))

        await store.set("profile", "strict")

        assert await store.get("profile") == "strict"
        assert seen == [("profile", "strict")]


@pytest.mark.asyncio
class TestEventHistorySink:
    async def test_records_event(self, repo: Repository) -> None:
        sink = EventHistorySink(repo)
        await sink.emit(NotificationEvent.DEVICE_RESTORED, {"device_name": "Heater"})
        events = await repo.get_recent_events(limit=1)
        assert events[0]["event"] == "device_restored"
        assert events[0]["tokens"] == {"device_name": "Heater"}
