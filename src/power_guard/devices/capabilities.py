"""Capability names understood by the action strategies."""

from __future__ import annotations

ONOFF = "onoff"
DIM = "dim"
TARGET_TEMPERATURE = "target_temperature"
THERMOSTAT_MODE = "thermostat_mode"
TOGGLE_CHARGING = "toggleChargingCapability"
MEASURE_POWER = "measure_power"
CHARGER_STATUS = "charger_status"
OFFERED_CURRENT = "measure_current.offered"
TARGET_CHARGER_CURRENT = "target_charger_current"

# Thermostat mode that disables cloud schedules
MANUAL_THERMOSTAT_MODE = "heat"

# Current limit capabilities the charger allocator writes, most volatile first.
# target_charger_current is the permanent limit and only used as a last resort.
ALLOCATOR_CURRENT_CAPABILITIES: tuple[str, ...] = (
    "dynamic_charger_current",
    "dynamicChargerCurrent",
    "dynamicCircuitCurrentP1",
    TARGET_CHARGER_CURRENT,
)

# Current limit capabilities for the generic step-down charger strategy
STEP_CURRENT_CAPABILITIES: tuple[str, ...] = (
    "dynamic_charger_current",
    "dynamicChargerCurrent",
    "target_current",
    "dynamicCircuitCurrentP1",
    "dynamic_current",
)

# Water heaters with discrete power tiers, highest tier first
STEPPED_POWER_TIERS: dict[str, tuple[str, ...]] = {
    "max_power_3000": ("high_power", "medium_power", "low_power"),
    "max_power": ("high_power", "medium_power", "low_power"),
}

# Captured into the pre-mitigation snapshot when the device exposes them
SNAPSHOT_CAPABILITIES: tuple[str, ...] = (
    ONOFF,
    DIM,
    TARGET_TEMPERATURE,
    THERMOSTAT_MODE,
    TOGGLE_CHARGING,
    *STEPPED_POWER_TIERS,
    *dict.fromkeys(STEP_CURRENT_CAPABILITIES + ALLOCATOR_CURRENT_CAPABILITIES),
)


def first_supported(capabilities: frozenset[str], candidates: tuple[str, ...]) -> str | None:
    """Return the first candidate the device exposes."""
    for cap in candidates:
        if cap in capabilities:
            return cap
    return None
