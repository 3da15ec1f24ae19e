"""Bounded retry queue for settings writes that failed."""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from power_guard.devices.base import SettingsStore

logger = logging.getLogger(__name__)


@dataclass
class PendingSave:
    key: str
    value: Any
    attempts: int = 0


class SaveRetryQueue:
    """At-least-once delivery of settings writes.

    A newer value for a key replaces the queued one. ``process_one`` retries
    the oldest pending write; after ``max_retries`` failed attempts the write
    is dropped and logged.
    """

    def __init__(self, store: SettingsStore, max_retries: int = 5) -> None:
        self._store = store
        self._max_retries = max_retries
        self._pending: OrderedDict[str, PendingSave] = OrderedDict()
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._pending)

    def enqueue(self, key: str, value: Any) -> None:
        existing = self._pending.get(key)
        if existing is not None:
            existing.value = value
            return
        self._pending[key] = PendingSave(key, value)
        logger.debug("Queued save of '%s' for retry", key)

    def discard(self, key: str) -> None:
        self._pending.pop(key, None)

    async def process_one(self) -> bool:
        """Retry the oldest pending write. Returns True if it succeeded."""
        if not self._pending:
            return False
        key, item = next(iter(self._pending.items()))
        try:
            await self._store.set(key, item.value)
        except Exception as e:
            item.attempts += 1
            if item.attempts >= self._max_retries:
                self._pending.pop(key, None)
                self.dropped += 1
                logger.error("Dropping save of '%s' after %d failed attempts: %s", key, item.attempts, e)
            else:
                # Rotate to the back so one stuck key does not starve the rest
                self._pending.move_to_end(key)
                logger.warning("Retry %d/%d saving '%s' failed: %s", item.attempts, self._max_retries, key, e)
            return False
        # A newer value may have been queued while the write was in flight
        if self._pending.get(key) is item:
            self._pending.pop(key)
        logger.info("Saved '%s' after retry", key)
        return True
