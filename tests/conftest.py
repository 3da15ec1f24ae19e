"""Shared test fixtures for Power Guard."""

from __future__ import annotations

from pathlib import Path
from typing import AsyncGenerator

import aiosqlite
import pytest
import pytest_asyncio

from power_guard.config.manager import ConfigManager
from power_guard.config.schema import AppConfig
from power_guard.db.engine import close_db, init_db
from power_guard.db.repository import Repository
from power_guard.devices.adapters.memory import InMemoryDeviceRegistry, InMemorySettingsStore
from power_guard.guard.notifications import Notifier


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def config() -> AppConfig:
    """Provide a default test configuration."""
    return AppConfig()


@pytest.fixture
def config_manager(tmp_path: Path) -> ConfigManager:
    """Provide a config manager with test paths."""
    defaults = tmp_path / "config.defaults.yaml"
    defaults.write_text("db:\n  path: ':memory:'\n")
    user = tmp_path / "config.yaml"
    mgr = ConfigManager(defaults_path=defaults, user_path=user)
    mgr.load()
    return mgr


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> AsyncGenerator[aiosqlite.Connection, None]:
    """Provide a fresh database file for each test."""
    conn = await init_db(tmp_path / "test.db")
    yield conn
    await close_db()


@pytest_asyncio.fixture
async def repo(db: aiosqlite.Connection) -> Repository:
    """Provide a repository with a fresh database."""
    return Repository(db)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> InMemoryDeviceRegistry:
    return InMemoryDeviceRegistry()


@pytest.fixture
def store() -> InMemorySettingsStore:
    return InMemorySettingsStore()


@pytest.fixture
def notifier() -> Notifier:
    """Notifier with no sinks; events are still kept in its history."""
    return Notifier([])
