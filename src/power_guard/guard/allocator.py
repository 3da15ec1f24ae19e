"""EV charger current allocation.

Runs on every smoothed sample (under its own short cooldown) and computes, per
charger, the highest current that keeps the household under the limit given
what everything else is drawing:

    non_charger_w = smoothed - charger_power_w
    available_w   = limit - non_charger_w - SAFETY_MARGIN_W
    available_a   = floor(available_w / voltage)

clamped to [MIN_CURRENT_A, min(MAX_CURRENT_A, circuit_limit_a)]. Below the
minimum the charger is paused instead.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from power_guard.config.schema import MitigationAction, PriorityEntry
from power_guard.devices import capabilities as caps
from power_guard.devices.base import DeviceCommandError, DeviceRegistry, DeviceState, Subscription
from power_guard.guard.ledger import MitigationLedger, MitigationRecord

logger = logging.getLogger(__name__)

SAFETY_MARGIN_W = 200.0
MIN_CURRENT_A = 6
MAX_CURRENT_A = 32
SINGLE_PHASE_VOLTAGE = 230.0
# Calibrated effective voltage for 3-phase chargers (3 x 230 V, slightly derated)
THREE_PHASE_VOLTAGE = 692.0
ADJUST_COOLDOWN_SECONDS = 5.0

ALLOCATOR_STRATEGY = "allocator"


def max_current_for(entry: PriorityEntry) -> int:
    """Full output for a charger: the circuit limit, capped at 32 A."""
    return int(min(MAX_CURRENT_A, entry.circuit_limit_a))


def calculate_target_current(
    smoothed_w: float,
    limit_w: float,
    charger_power_w: float,
    phases: int = 3,
    circuit_limit_a: float = MAX_CURRENT_A,
) -> int | None:
    """Target current in amps for one charger, or None to pause it."""
    max_a = int(min(MAX_CURRENT_A, circuit_limit_a))
    if smoothed_w <= limit_w:
        return max_a

    non_charger_w = smoothed_w - charger_power_w
    available_w = limit_w - non_charger_w - SAFETY_MARGIN_W
    if available_w <= 0:
        logger.debug(
            "Charger calc: usage=%.0fW charger=%.0fW available=%.0fW -> pause (no headroom)",
            smoothed_w, charger_power_w, available_w,
        )
        return None

    voltage = SINGLE_PHASE_VOLTAGE if phases == 1 else THREE_PHASE_VOLTAGE
    available_a = math.floor(available_w / voltage)
    if available_a < MIN_CURRENT_A:
        logger.debug(
            "Charger calc: available=%.0fW -> %dA below minimum %dA -> pause",
            available_w, available_a, MIN_CURRENT_A,
        )
        return None

    target = max(MIN_CURRENT_A, min(max_a, available_a))
    logger.debug(
        "Charger calc: usage=%.0fW charger=%.0fW available=%.0fW circuit=%.0fA -> %dA",
        smoothed_w, charger_power_w, available_w, circuit_limit_a, target,
    )
    return target


def is_allocator_managed(entry: PriorityEntry, device: DeviceState) -> bool:
    """Dynamic-current entries whose device exposes a writable current limit."""
    return (
        entry.action == MitigationAction.DYNAMIC_CURRENT
        and caps.first_supported(device.capabilities, caps.ALLOCATOR_CURRENT_CAPABILITIES) is not None
    )


@dataclass
class ChargerTelemetry:
    """Latest values reported by a charger's capability subscriptions."""

    power_w: float = 0.0
    charger_status: Any = None
    onoff: bool | None = None
    offered_current_a: float | None = None
    updated_at: float = 0.0


@dataclass
class ChargerAdjustment:
    """One applied change, reported back to the state machine."""

    entry: PriorityEntry
    target_a: int | None
    created: bool = False
    released: bool = False


@dataclass
class _Tracked:
    telemetry: ChargerTelemetry = field(default_factory=ChargerTelemetry)
    subscriptions: list[Subscription] = field(default_factory=list)


class ChargerCurrentAllocator:
    """Computes and applies charger currents, keeping allocator records in the ledger."""

    def __init__(
        self,
        registry: DeviceRegistry,
        clock: Callable[[], float] = time.time,
        cooldown_seconds: float = ADJUST_COOLDOWN_SECONDS,
    ) -> None:
        self._registry = registry
        self._clock = clock
        self._cooldown_seconds = cooldown_seconds
        self._tracked: dict[str, _Tracked] = {}
        self.last_adjust_time = 0.0

    def telemetry(self, device_id: str) -> ChargerTelemetry:
        tracked = self._tracked.get(device_id)
        return tracked.telemetry if tracked else ChargerTelemetry()

    def track(self, entries: list[PriorityEntry]) -> None:
        """Subscribe to telemetry of the given chargers, dropping any others."""
        wanted = {e.device_id for e in entries}
        for device_id in list(self._tracked):
            if device_id not in wanted:
                for sub in self._tracked.pop(device_id).subscriptions:
                    sub.cancel()
        for device_id in wanted:
            if device_id in self._tracked:
                continue
            tracked = _Tracked()
            self._tracked[device_id] = tracked
            for capability in (caps.MEASURE_POWER, caps.CHARGER_STATUS, caps.ONOFF, caps.OFFERED_CURRENT):
                tracked.subscriptions.append(
                    self._registry.subscribe_capability(
                        device_id, capability, self._telemetry_callback(device_id, capability),
                    )
                )
        logger.debug("Tracking %d charger(s)", len(self._tracked))

    def untrack_all(self) -> None:
        self.track([])

    def seed(self, device: DeviceState) -> None:
        """Initialise telemetry from a device read (before any events arrive)."""
        tracked = self._tracked.get(device.device_id)
        if tracked is None:
            return
        for capability in (caps.MEASURE_POWER, caps.CHARGER_STATUS, caps.ONOFF, caps.OFFERED_CURRENT):
            if device.has(capability):
                self._record(tracked.telemetry, capability, device.values.get(capability))

    def reset_cooldown(self) -> None:
        self.last_adjust_time = 0.0

    def _telemetry_callback(self, device_id: str, capability: str) -> Callable[[Any], None]:
        def on_change(value: Any) -> None:
            tracked = self._tracked.get(device_id)
            if tracked is not None:
                self._record(tracked.telemetry, capability, value)
        return on_change

    def _record(self, telemetry: ChargerTelemetry, capability: str, value: Any) -> None:
        if capability == caps.MEASURE_POWER:
            telemetry.power_w = float(value or 0)
        elif capability == caps.CHARGER_STATUS:
            telemetry.charger_status = value
        elif capability == caps.ONOFF:
            telemetry.onoff = value
        elif capability == caps.OFFERED_CURRENT:
            telemetry.offered_current_a = None if value is None else float(value)
        telemetry.updated_at = self._clock()

    async def adjust(
        self,
        smoothed_w: float,
        limit_w: float,
        entries: list[PriorityEntry],
        ledger: MitigationLedger,
        bypass_cooldown: bool = False,
    ) -> list[ChargerAdjustment]:
        """Run one allocation pass. Never raises.

        The caller holds the mitigation lock; ``ledger`` is mutated in place.
        """
        now = self._clock()
        if not bypass_cooldown and now - self.last_adjust_time < self._cooldown_seconds:
            return []

        adjustments: list[ChargerAdjustment] = []
        for entry in entries:
            try:
                device = await self._registry.get_device(entry.device_id)
            except DeviceCommandError as e:
                logger.warning("Charger '%s' lookup failed: %s", entry.display_name, e)
                continue
            if device is None:
                continue
            capability = caps.first_supported(device.capabilities, caps.ALLOCATOR_CURRENT_CAPABILITIES)
            if capability is None:
                continue  # handled by the generic step-down strategy

            record = ledger.get(entry.device_id)
            if record is not None and record.current_target_a is None:
                continue  # curtailed by a priority-walk strategy, leave it to restore

            max_a = max_current_for(entry)
            telemetry = self.telemetry(entry.device_id)
            target = calculate_target_current(
                smoothed_w, limit_w, telemetry.power_w, entry.charger_phases, entry.circuit_limit_a,
            )

            if record is None:
                if target is not None and target >= max_a:
                    continue  # full output, nothing to track
            elif target is None:
                if record.current_target_a == 0:
                    continue  # already paused
            elif abs(record.current_target_a - target) < 1:
                continue

            if not await self._apply(device, capability, target):
                continue
            self.last_adjust_time = now

            if target is None or target < max_a:
                tracked_target = 0 if target is None else target
                if record is None:
                    ledger.add(MitigationRecord(
                        device_id=entry.device_id,
                        action=MitigationAction.DYNAMIC_CURRENT,
                        previous_state={capability: max_a, caps.ONOFF: device.values.get(caps.ONOFF)},
                        mitigated_at=now,
                        current_target_a=tracked_target,
                        strategy=ALLOCATOR_STRATEGY,
                        name=entry.display_name,
                    ))
                    adjustments.append(ChargerAdjustment(entry, target, created=True))
                else:
                    record.current_target_a = tracked_target
                    adjustments.append(ChargerAdjustment(entry, target))
            else:
                ledger.remove(entry.device_id)
                adjustments.append(ChargerAdjustment(entry, target, released=True))
        return adjustments

    async def _apply(self, device: DeviceState, capability: str, target: int | None) -> bool:
        try:
            if target is None:
                if not device.has(caps.ONOFF):
                    logger.info("Charger '%s' cannot be paused (no onoff)", device.display_name)
                    return False
                if device.values.get(caps.ONOFF) is not False:
                    await self._registry.set_capability_value(device.device_id, caps.ONOFF, False)
                logger.info("Charger paused: '%s'", device.display_name)
                return True
            await self._registry.set_capability_value(device.device_id, capability, target)
            if device.has(caps.ONOFF) and device.values.get(caps.ONOFF) is False:
                await self._registry.set_capability_value(device.device_id, caps.ONOFF, True)
            logger.info("Charger current: '%s' -> %dA (%s)", device.display_name, target, capability)
            return True
        except Exception as e:
            logger.warning("Failed to set charger '%s' current: %s", device.display_name, e)
            return False

    async def release(self, device: DeviceState, record: MitigationRecord) -> bool:
        """Give a charger back its pre-allocation current and switch it on again.

        Used for records the allocator no longer manages (entry disabled or
        removed, or the current capability gone).
        """
        try:
            capability = caps.first_supported(device.capabilities, caps.ALLOCATOR_CURRENT_CAPABILITIES)
            previous = record.previous_state.get(capability) if capability else None
            if previous is not None and device.values.get(capability) != previous:
                await self._registry.set_capability_value(device.device_id, capability, previous)
            if (
                device.has(caps.ONOFF)
                and device.values.get(caps.ONOFF) is False
                and record.previous_state.get(caps.ONOFF) is not False
            ):
                await self._registry.set_capability_value(device.device_id, caps.ONOFF, True)
        except Exception as e:
            logger.warning("Failed to release charger '%s': %s", device.display_name, e)
            return False
        logger.info("Charger released from allocation: '%s'", device.display_name)
        return True

    async def apply_circuit_limits(self, entries: list[PriorityEntry]) -> int:
        """Push each charger's circuit limit to its permanent current setting.

        Returns the number of chargers updated.
        """
        updated = 0
        for entry in entries:
            try:
                device = await self._registry.get_device(entry.device_id)
                if device is None:
                    continue
                self.seed(device)
                if not device.has(caps.TARGET_CHARGER_CURRENT):
                    continue
                limit = entry.circuit_limit_a
                if device.values.get(caps.TARGET_CHARGER_CURRENT) == limit:
                    continue
                value = int(limit) if float(limit).is_integer() else limit
                await self._registry.set_capability_value(
                    entry.device_id, caps.TARGET_CHARGER_CURRENT, value,
                )
                logger.info("Circuit limit for '%s' set to %sA", entry.display_name, value)
                updated += 1
            except Exception as e:
                logger.warning("Failed to apply circuit limit for '%s': %s", entry.display_name, e)
        return updated
