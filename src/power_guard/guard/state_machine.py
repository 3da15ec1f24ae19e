"""Prioritized mitigation and LIFO restore of household loads.

Owns the ledger. Every body that reads or mutates it (priority walk, restore,
charger allocation) runs under one asyncio.Lock, held across the device
commands it issues, and the ledger is persisted after each mutation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from power_guard.config.schema import GuardConfig
from power_guard.devices.actions import apply_action, restore_device, snapshot_state
from power_guard.devices.base import (
    DeviceCommandError,
    DeviceRegistry,
    DeviceState,
    NotificationEvent,
    SettingsStore,
)
from power_guard.guard.allocator import ChargerAdjustment, ChargerCurrentAllocator, is_allocator_managed
from power_guard.guard.ledger import MitigationLedger, MitigationLog, MitigationRecord
from power_guard.guard.notifications import Notifier
from power_guard.guard.save_queue import SaveRetryQueue

logger = logging.getLogger(__name__)

LEDGER_KEY = "mitigated_devices"

_MISSING = object()


class MitigationStateMachine:
    """Decides which single device to curtail next, and which to give back."""

    def __init__(
        self,
        config: GuardConfig,
        registry: DeviceRegistry,
        store: SettingsStore,
        notifier: Notifier,
        allocator: ChargerCurrentAllocator | None = None,
        save_queue: SaveRetryQueue | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._registry = registry
        self._store = store
        self._notifier = notifier
        self._clock = clock
        self.allocator = allocator or ChargerCurrentAllocator(registry, clock=clock)
        self.save_queue = save_queue or SaveRetryQueue(store)
        self.ledger = MitigationLedger()
        self.log = MitigationLog()
        self.last_mitigation_time = 0.0
        self._started_at: dict[str, float] = {}
        self._lock = asyncio.Lock()

    @property
    def config(self) -> GuardConfig:
        return self._config

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    def update_config(self, config: GuardConfig) -> None:
        self._config = config

    def note_device_started(self, device_id: str) -> None:
        """Record when a device was switched on, for the minimum-runtime guard."""
        self._started_at[device_id] = self._clock()

    def add_log(self, message: str) -> None:
        self.log.add(message, self._clock())

    async def load(self) -> int:
        """Rebuild the ledger from the settings store without touching any device."""
        try:
            data = await self._store.get(LEDGER_KEY)
        except Exception:
            logger.exception("Failed to load persisted mitigation ledger")
            return 0
        count = self.ledger.load_list(data if isinstance(data, list) else [])
        if count:
            logger.info("Recovered %d mitigated device(s) from storage", count)
        return count

    async def trigger_mitigation(self, smoothed_w: float, bypass_cooldown: bool = False) -> bool:
        """Curtail at most one device. Returns True if a priority device was mitigated."""
        async with self._lock:
            now = self._clock()
            if (
                not bypass_cooldown
                and self.last_mitigation_time
                and now - self.last_mitigation_time < self._config.cooldown_seconds
            ):
                logger.debug(
                    "Mitigation cooldown active (%.0fs < %ds)",
                    now - self.last_mitigation_time, self._config.cooldown_seconds,
                )
                return False

            await self._adjust_chargers_locked(smoothed_w, bypass_cooldown)

            for entry in self._config.sorted_priority_list():
                if not entry.enabled or entry.device_id in self.ledger:
                    continue
                started = self._started_at.get(entry.device_id)
                if (
                    entry.min_runtime_seconds
                    and started is not None
                    and now - started < entry.min_runtime_seconds
                ):
                    logger.debug("'%s' inside minimum runtime, skipping", entry.display_name)
                    continue
                device = await self._lookup(entry.device_id)
                if device is None or device is _MISSING:
                    continue
                if is_allocator_managed(entry, device):
                    continue

                snapshot = snapshot_state(device)
                outcome = await apply_action(self._registry, device, entry.action)
                if not outcome.applied:
                    continue

                self.ledger.add(MitigationRecord(
                    device_id=entry.device_id,
                    action=entry.action,
                    previous_state=snapshot,
                    mitigated_at=now,
                    strategy=outcome.strategy,
                    name=entry.display_name,
                ))
                self.last_mitigation_time = now
                self.add_log(f"Mitigated {entry.display_name} ({entry.action.value}) at {smoothed_w:.0f}W")
                logger.info(
                    "Mitigated '%s' with %s via %s (power %.0fW)",
                    entry.display_name, entry.action.value, outcome.strategy, smoothed_w,
                )
                await self._persist()
                self._notifier.emit(NotificationEvent.MITIGATION_APPLIED, {
                    "device_name": entry.display_name,
                    "action": entry.action.value,
                })
                return True

            logger.debug("No eligible device to mitigate at %.0fW", smoothed_w)
            return False

    async def trigger_restore(self) -> bool:
        """Restore the most recently mitigated device. Returns True on success."""
        async with self._lock:
            record = self.ledger.last_restorable(await self._released_chargers())
            if record is None:
                return False
            now = self._clock()
            entry = self._config.find_entry(record.device_id)
            min_off = entry.min_off_time_seconds if entry else 0
            if now - record.mitigated_at < min_off:
                logger.debug(
                    "'%s' inside minimum off time (%.0fs < %ds)",
                    record.name or record.device_id, now - record.mitigated_at, min_off,
                )
                return False

            device = await self._lookup(record.device_id)
            if device is _MISSING:
                return False
            name = record.name or record.device_id
            if device is None:
                self.ledger.remove(record.device_id)
                self.add_log(f"Dropped {name}: device no longer exists")
                logger.warning("Dropping mitigation record for missing device '%s'", name)
                await self._persist()
                self._emit_cleared_if_empty()
                return False

            if record.allocator_managed:
                restored = await self.allocator.release(device, record)
            else:
                restored = await restore_device(
                    self._registry, device, record.action, record.previous_state, record.strategy,
                )
            if not restored:
                return False

            self.ledger.remove(record.device_id)
            self._started_at[record.device_id] = now
            self.add_log(f"Restored {name}")
            logger.info("Restored '%s' (%d still mitigated)", name, len(self.ledger))
            await self._persist()
            self._notifier.emit(NotificationEvent.DEVICE_RESTORED, {"device_name": name})
            self._emit_cleared_if_empty()
            return True

    async def adjust_chargers(self, smoothed_w: float, bypass_cooldown: bool = False) -> list[ChargerAdjustment]:
        """Run the charger allocator outside the priority walk (every sample)."""
        async with self._lock:
            return await self._adjust_chargers_locked(smoothed_w, bypass_cooldown)

    async def apply_circuit_limits(self) -> int:
        async with self._lock:
            return await self.allocator.apply_circuit_limits(self._config.charger_entries())

    async def clear(self) -> None:
        """Forget every record without restoring (statistics reset)."""
        async with self._lock:
            self.ledger.clear()
            self.log.clear()
            self.last_mitigation_time = 0.0
            await self._persist()

    async def _adjust_chargers_locked(self, smoothed_w: float, bypass_cooldown: bool) -> list[ChargerAdjustment]:
        entries = self._config.charger_entries()
        if not entries:
            return []
        adjustments = await self.allocator.adjust(
            smoothed_w, self._config.effective_limit_w, entries, self.ledger, bypass_cooldown,
        )
        for adj in adjustments:
            name = adj.entry.display_name
            if adj.released:
                self.add_log(f"Charger restored: {name} -> {adj.target_a}A")
                self._notifier.emit(NotificationEvent.DEVICE_RESTORED, {"device_name": name})
                self._emit_cleared_if_empty()
            else:
                label = "paused" if adj.target_a is None else f"{adj.target_a}A"
                self.add_log(f"Charger {name} -> {label}")
                if adj.created:
                    self._notifier.emit(NotificationEvent.MITIGATION_APPLIED, {
                        "device_name": name,
                        "action": adj.entry.action.value,
                    })
        if adjustments:
            await self._persist()
        return adjustments

    async def _released_chargers(self) -> set[str]:
        """Allocator records whose charger the allocator no longer manages."""
        managed = {e.device_id: e for e in self._config.charger_entries()}
        released: set[str] = set()
        for record in self.ledger:
            if not record.allocator_managed:
                continue
            entry = managed.get(record.device_id)
            if entry is None:
                released.add(record.device_id)
                continue
            device = await self._lookup(record.device_id)
            if device is None or (isinstance(device, DeviceState) and not is_allocator_managed(entry, device)):
                released.add(record.device_id)
        return released

    async def _lookup(self, device_id: str) -> DeviceState | None | object:
        """Device state, None if it does not exist, _MISSING if the platform failed."""
        try:
            return await self._registry.get_device(device_id)
        except DeviceCommandError as e:
            logger.warning("Device lookup for %s failed: %s", device_id, e)
            return _MISSING

    async def _persist(self) -> None:
        data = self.ledger.to_list()
        try:
            await self._store.set(LEDGER_KEY, data)
        except Exception as e:
            logger.warning("Failed to persist mitigation ledger, queued for retry: %s", e)
            self.save_queue.enqueue(LEDGER_KEY, data)
            return
        # The fresh write supersedes any queued older snapshot
        self.save_queue.discard(LEDGER_KEY)

    def _emit_cleared_if_empty(self) -> None:
        if not self.ledger:
            self.add_log("All mitigations cleared")
            self._notifier.emit(NotificationEvent.MITIGATION_CLEARED, {})
