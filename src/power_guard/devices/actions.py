"""Per-device mitigation strategies and their inverse restores.

Each mitigation action maps to an ordered chain of strategies. A strategy is
picked by matching its required capabilities (and optional driver hint)
against the device's live capability set; the first match wins. The chosen
strategy either applies its curtailment or reports "not applicable" when the
device is already at its minimum. Restores write the pre-mitigation snapshot
back unconditionally, whatever the device state has drifted to.

Device I/O errors never escape this module: they are logged and reported as
not applied / not restored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from power_guard.config.schema import MitigationAction
from power_guard.devices import capabilities as caps
from power_guard.devices.base import DeviceRegistry, DeviceState

logger = logging.getLogger(__name__)

SETPOINT_DELTA = 3.0
SETPOINT_FLOOR = 5.0
DEFAULT_SETPOINT = 20.0
DEFAULT_RESTORE_SETPOINT = 21.0
DIM_FLOOR = 0.1
CURRENT_STEP_A = 4
CURRENT_FLOOR_A = 6
DEFAULT_CURRENT_A = 16

ApplyFn = Callable[[DeviceRegistry, DeviceState], Awaitable[bool]]
RestoreFn = Callable[[DeviceRegistry, DeviceState, dict[str, Any]], Awaitable[bool]]


@dataclass(frozen=True)
class ActionStrategy:
    """One link of a fallback chain."""

    name: str
    requires: tuple[str, ...]  # any one of these capabilities
    apply: ApplyFn
    restore: RestoreFn
    driver_hint: str = ""  # substring the driver id must contain

    def matches(self, device: DeviceState) -> bool:
        if not any(device.has(cap) for cap in self.requires):
            return False
        if self.driver_hint and self.driver_hint not in device.driver_id.lower():
            return False
        return True


@dataclass
class ActionOutcome:
    applied: bool
    strategy: str | None = None


async def _write(registry: DeviceRegistry, device: DeviceState, capability: str, value: Any) -> None:
    await registry.set_capability_value(device.device_id, capability, value)
    device.values[capability] = value


# ── Switches ─────────────────────────────────────────────────


def _switch_strategy(name: str, capability: str, driver_hint: str = "") -> ActionStrategy:
    async def apply(registry: DeviceRegistry, device: DeviceState) -> bool:
        if device.values.get(capability) is False:
            return False  # already off, turning it off again saves nothing
        await _write(registry, device, capability, False)
        return True

    async def restore(registry: DeviceRegistry, device: DeviceState, snapshot: dict[str, Any]) -> bool:
        was_on = snapshot.get(capability)
        await _write(registry, device, capability, True if was_on is None else was_on)
        return True

    return ActionStrategy(name, (capability,), apply, restore, driver_hint)


# ── Thermostat setpoint ──────────────────────────────────────


async def _lower_setpoint(registry: DeviceRegistry, device: DeviceState) -> bool:
    current = float(device.value(caps.TARGET_TEMPERATURE, DEFAULT_SETPOINT))
    if current <= SETPOINT_FLOOR:
        return False
    # Force manual mode first, otherwise a cloud schedule reverts the setpoint
    if device.has(caps.THERMOSTAT_MODE) and device.values.get(caps.THERMOSTAT_MODE) != caps.MANUAL_THERMOSTAT_MODE:
        await _write(registry, device, caps.THERMOSTAT_MODE, caps.MANUAL_THERMOSTAT_MODE)
    await _write(registry, device, caps.TARGET_TEMPERATURE, max(SETPOINT_FLOOR, current - SETPOINT_DELTA))
    return True


async def _restore_setpoint(registry: DeviceRegistry, device: DeviceState, snapshot: dict[str, Any]) -> bool:
    mode = snapshot.get(caps.THERMOSTAT_MODE)
    if device.has(caps.THERMOSTAT_MODE) and mode is not None:
        await _write(registry, device, caps.THERMOSTAT_MODE, mode)
    previous = snapshot.get(caps.TARGET_TEMPERATURE)
    await _write(
        registry, device, caps.TARGET_TEMPERATURE,
        DEFAULT_RESTORE_SETPOINT if previous is None else previous,
    )
    return True


SETPOINT = ActionStrategy("setpoint", (caps.TARGET_TEMPERATURE,), _lower_setpoint, _restore_setpoint)


# ── Dimmer ───────────────────────────────────────────────────


async def _dim_down(registry: DeviceRegistry, device: DeviceState) -> bool:
    level = device.values.get(caps.DIM)
    if level is not None and level <= DIM_FLOOR:
        return False
    await _write(registry, device, caps.DIM, DIM_FLOOR)
    return True


async def _restore_dim(registry: DeviceRegistry, device: DeviceState, snapshot: dict[str, Any]) -> bool:
    previous = snapshot.get(caps.DIM)
    await _write(registry, device, caps.DIM, 1.0 if previous is None else previous)
    return True


DIMMER = ActionStrategy("dim", (caps.DIM,), _dim_down, _restore_dim)


# ── Stepped power (water heaters) ────────────────────────────


def _tier_strategy(capability: str) -> ActionStrategy:
    tiers = caps.STEPPED_POWER_TIERS[capability]

    async def apply(registry: DeviceRegistry, device: DeviceState) -> bool:
        if device.has(caps.ONOFF) and device.values.get(caps.ONOFF) is False:
            return False
        level = device.values.get(capability)
        if level in tiers and tiers.index(level) < len(tiers) - 1:
            await _write(registry, device, capability, tiers[tiers.index(level) + 1])
            return True
        # Lowest or unknown tier: switch off entirely
        if device.has(caps.ONOFF):
            await _write(registry, device, caps.ONOFF, False)
            return True
        return False

    async def restore(registry: DeviceRegistry, device: DeviceState, snapshot: dict[str, Any]) -> bool:
        if snapshot.get(capability) is not None:
            await _write(registry, device, capability, snapshot[capability])
        if device.has(caps.ONOFF):
            was_on = snapshot.get(caps.ONOFF)
            await _write(registry, device, caps.ONOFF, True if was_on is None else was_on)
        return True

    return ActionStrategy(f"tier:{capability}", (capability,), apply, restore)


# ── Generic charger current step-down ────────────────────────


async def _step_current_down(registry: DeviceRegistry, device: DeviceState) -> bool:
    capability = caps.first_supported(device.capabilities, caps.STEP_CURRENT_CAPABILITIES)
    if capability is None:
        return False
    current = device.value(capability, DEFAULT_CURRENT_A)
    if current <= CURRENT_FLOOR_A:
        # Below the floor a charger is unstable, pause it instead
        if not device.has(caps.ONOFF) or device.values.get(caps.ONOFF) is False:
            return False
        await _write(registry, device, caps.ONOFF, False)
        return True
    await _write(registry, device, capability, max(CURRENT_FLOOR_A, current - CURRENT_STEP_A))
    return True


async def _restore_current(registry: DeviceRegistry, device: DeviceState, snapshot: dict[str, Any]) -> bool:
    paused = device.has(caps.ONOFF) and device.values.get(caps.ONOFF) is False
    if paused and snapshot.get(caps.ONOFF) is not False:
        await _write(registry, device, caps.ONOFF, True)
        return True
    capability = caps.first_supported(device.capabilities, caps.STEP_CURRENT_CAPABILITIES)
    if capability is None:
        return False
    previous = snapshot.get(capability)
    await _write(registry, device, capability, DEFAULT_CURRENT_A if previous is None else previous)
    return True


STEP_CURRENT = ActionStrategy("step_current", caps.STEP_CURRENT_CAPABILITIES, _step_current_down, _restore_current)


# ── Registry ─────────────────────────────────────────────────

POWER_OFF = _switch_strategy("onoff", caps.ONOFF)
_POWER_CUT_CHAIN = (
    POWER_OFF,
    _switch_strategy("toggle_charging", caps.TOGGLE_CHARGING),
    SETPOINT,
)

STRATEGIES: dict[MitigationAction, tuple[ActionStrategy, ...]] = {
    MitigationAction.TURN_OFF: _POWER_CUT_CHAIN,
    MitigationAction.CHARGE_PAUSE: _POWER_CUT_CHAIN,
    MitigationAction.DIM: (DIMMER, POWER_OFF),
    MitigationAction.TARGET_TEMPERATURE: (
        # Cloud-polled heaters react slowly to setpoints; cutting power is as slow but stronger
        _switch_strategy("cloud_heater_off", caps.ONOFF, driver_hint="adax"),
        SETPOINT,
        POWER_OFF,
    ),
    MitigationAction.STEPPED_POWER: (
        *(_tier_strategy(cap) for cap in caps.STEPPED_POWER_TIERS),
        POWER_OFF,
    ),
    MitigationAction.DYNAMIC_CURRENT: (STEP_CURRENT, POWER_OFF),
}


def resolve_strategy(action: MitigationAction, device: DeviceState) -> ActionStrategy | None:
    """Pick the first strategy in the action's chain that fits the device."""
    for strategy in STRATEGIES.get(action, ()):
        if strategy.matches(device):
            return strategy
    return None


def snapshot_state(device: DeviceState) -> dict[str, Any]:
    """Capture the values a restore may need to write back."""
    return {
        cap: device.values.get(cap)
        for cap in caps.SNAPSHOT_CAPABILITIES
        if device.has(cap)
    }


async def apply_action(
    registry: DeviceRegistry,
    device: DeviceState,
    action: MitigationAction,
) -> ActionOutcome:
    """Apply one curtailment step. Never raises."""
    strategy = resolve_strategy(action, device)
    if strategy is None:
        logger.debug(
            "No strategy for action %s on '%s' (capabilities: %s)",
            action.value, device.display_name, sorted(device.capabilities),
        )
        return ActionOutcome(applied=False)
    try:
        applied = await strategy.apply(registry, device)
    except Exception as e:
        logger.warning(
            "Applying %s to '%s' via %s failed: %s",
            action.value, device.display_name, strategy.name, e,
        )
        return ActionOutcome(applied=False, strategy=strategy.name)
    if applied:
        logger.info("Applied %s to '%s' via %s", action.value, device.display_name, strategy.name)
    return ActionOutcome(applied=applied, strategy=strategy.name)


async def restore_device(
    registry: DeviceRegistry,
    device: DeviceState,
    action: MitigationAction,
    snapshot: dict[str, Any],
    strategy_name: str | None = None,
) -> bool:
    """Write the pre-mitigation snapshot back. Never raises.

    The strategy that applied the mitigation is preferred so the inverse
    transition matches, falling back to the action's chain if the device no
    longer supports it.
    """
    strategy = None
    if strategy_name:
        strategy = next(
            (s for s in STRATEGIES.get(action, ()) if s.name == strategy_name and s.matches(device)),
            None,
        )
    if strategy is None:
        strategy = resolve_strategy(action, device)
    if strategy is None:
        logger.warning("No restore strategy for action %s on '%s'", action.value, device.display_name)
        return False
    try:
        restored = await strategy.restore(registry, device, snapshot)
    except Exception as e:
        logger.warning(
            "Restoring '%s' via %s failed: %s", device.display_name, strategy.name, e,
        )
        return False
    if restored:
        logger.info("Restored '%s' via %s", device.display_name, strategy.name)
    return restored
