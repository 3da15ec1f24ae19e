"""Status snapshot of the guard, as served to the API and MQTT."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from power_guard.config.schema import PriorityEntry
from power_guard.guard.allocator import ChargerTelemetry, max_current_for
from power_guard.guard.ledger import MitigationRecord

# Charging above this draw counts as actively charging
CHARGING_POWER_THRESHOLD_W = 100.0

_DISCONNECTED = (1, "disconnected", "DISCONNECTED")
_AWAITING_START = (2, "awaiting_start", "AWAITING_START")
_COMPLETED = (4, "completed", "COMPLETED")


@dataclass
class ChargerStatus:
    device_id: str
    name: str
    status: str  # idle, paused, dynamic, charging, waiting, completed, connected
    label: str
    current_a: float = 0.0
    power_w: float = 0.0
    circuit_limit_a: float = 32.0
    charger_status: Any = None

    @property
    def is_charging(self) -> bool:
        return self.status in ("charging", "dynamic")


@dataclass
class MitigatedDevice:
    device_id: str
    name: str
    action: str
    mitigated_at: float
    current_target_a: int | None = None


@dataclass
class GuardStatus:
    enabled: bool
    profile: str
    current_power_w: float | None
    limit_w: float
    over_limit_count: int
    hysteresis_count: int
    is_over_limit: bool
    mitigated_devices: list[MitigatedDevice] = field(default_factory=list)
    charger_statuses: list[ChargerStatus] = field(default_factory=list)
    meter_connected: bool = False
    meter_last_seen: float | None = None
    log: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for charger, status in zip(data["charger_statuses"], self.charger_statuses):
            charger["is_charging"] = status.is_charging
        return data


def _matches(value: Any, candidates: tuple) -> bool:
    return value is not None and not isinstance(value, bool) and value in candidates


def derive_charger_status(
    entry: PriorityEntry,
    telemetry: ChargerTelemetry,
    record: MitigationRecord | None,
) -> ChargerStatus:
    """Classify a charger from its telemetry and ledger record."""
    cs = telemetry.charger_status
    status = ChargerStatus(
        device_id=entry.device_id,
        name=entry.display_name,
        status="idle",
        label="Idle",
        power_w=telemetry.power_w,
        circuit_limit_a=entry.circuit_limit_a,
        charger_status=cs,
    )
    connected = cs is not None and not _matches(cs, _DISCONNECTED)

    if _matches(cs, _DISCONNECTED):
        status.label = "No car connected"
    elif record is not None and record.allocator_managed:
        if not record.current_target_a:
            status.status, status.label = "paused", "Paused by power guard"
        else:
            status.status = "dynamic"
            status.label = f"Dynamic ({record.current_target_a}A)"
            status.current_a = record.current_target_a
    elif telemetry.power_w > CHARGING_POWER_THRESHOLD_W:
        offered = telemetry.offered_current_a or max_current_for(entry)
        status.status = "charging"
        status.label = f"Charging ({round(offered)}A)"
        status.current_a = offered
    elif connected and _matches(cs, _AWAITING_START):
        status.status, status.label = "waiting", "Waiting to start"
    elif connected and _matches(cs, _COMPLETED):
        status.status, status.label = "completed", "Completed"
    elif connected:
        status.status, status.label = "connected", "Connected"
    return status
