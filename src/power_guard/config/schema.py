"""Pydantic configuration models for all system settings."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class Profile(str, Enum):
    """Operating profiles; each scales the configured power limit."""

    NORMAL = "normal"
    STRICT = "strict"
    SOLAR = "solar"


PROFILE_LIMIT_FACTOR: dict[Profile, float] = {
    Profile.NORMAL: 1.0,
    Profile.STRICT: 0.9,
    Profile.SOLAR: 1.05,
}


class MitigationAction(str, Enum):
    """How a priority entry is curtailed."""

    TURN_OFF = "turn_off"
    DIM = "dim"
    TARGET_TEMPERATURE = "target_temperature"
    CHARGE_PAUSE = "charge_pause"
    DYNAMIC_CURRENT = "dynamic_current"
    STEPPED_POWER = "stepped_power"


# Action names used by older stored settings
_LEGACY_ACTIONS = {
    "onoff": MitigationAction.TURN_OFF.value,
    "hoiax_power": MitigationAction.STEPPED_POWER.value,
}


class PriorityEntry(BaseModel):
    device_id: str
    name: str = ""
    priority: int = 0  # ascending: lower numbers are mitigated first
    action: MitigationAction = MitigationAction.TURN_OFF
    enabled: bool = True
    min_runtime_seconds: int = Field(0, ge=0)
    min_off_time_seconds: int = Field(0, ge=0)
    circuit_limit_a: float = Field(32.0, gt=0)  # chargers only
    charger_phases: Literal[1, 3] = 3  # chargers only

    @field_validator("action", mode="before")
    @classmethod
    def _map_legacy_action(cls, value: object) -> object:
        if isinstance(value, str):
            return _LEGACY_ACTIONS.get(value, value)
        return value

    @property
    def display_name(self) -> str:
        return self.name or self.device_id


class GuardConfig(BaseModel):
    """Settings that drive the mitigation engine. Reloadable at runtime."""

    enabled: bool = True
    profile: Profile = Profile.NORMAL
    power_limit_w: float = Field(10000.0, gt=0)
    smoothing_window: int = Field(5, ge=1)  # readings in the moving average
    spike_multiplier: float = Field(2.0, gt=1.0)  # reading > avg * this is ignored
    hysteresis_count: int = Field(3, ge=1)  # consecutive readings over limit before acting
    cooldown_seconds: int = Field(30, ge=0)  # min seconds between mitigation steps
    priority_list: list[PriorityEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_device_ids(self) -> GuardConfig:
        seen: set[str] = set()
        for entry in self.priority_list:
            if entry.device_id in seen:
                raise ValueError(f"duplicate device_id in priority_list: {entry.device_id}")
            seen.add(entry.device_id)
        return self

    @property
    def profile_factor(self) -> float:
        return PROFILE_LIMIT_FACTOR.get(self.profile, 1.0)

    @property
    def effective_limit_w(self) -> float:
        """Configured limit scaled by the active profile."""
        return self.power_limit_w * self.profile_factor

    def sorted_priority_list(self) -> list[PriorityEntry]:
        """Entries ordered by priority; list order breaks ties (stable sort)."""
        return sorted(self.priority_list, key=lambda e: e.priority)

    def find_entry(self, device_id: str) -> PriorityEntry | None:
        for entry in self.priority_list:
            if entry.device_id == device_id:
                return entry
        return None

    def charger_entries(self) -> list[PriorityEntry]:
        """Enabled entries using dynamic current allocation."""
        return [
            e for e in self.priority_list
            if e.enabled and e.action == MitigationAction.DYNAMIC_CURRENT
        ]


class MeterConfig(BaseModel):
    """The aggregate power meter (HAN reader) feeding the engine."""

    device_id: str = ""
    capability: str = "measure_power"
    poll_interval_seconds: float = 10.0
    event_grace_seconds: float = 8.0  # poll is skipped if an event arrived this recently
    watchdog_interval_seconds: float = 10.0
    stale_after_seconds: float = 30.0
    reconnect_after_seconds: float = 60.0


class RegistryConfig(BaseModel):
    adapter: str = "memory"  # "memory" or "http"
    base_url: str = "http://localhost:8123/api"
    token: str = ""
    timeout_seconds: float = 5.0
    watch_interval_seconds: float = 5.0


class MQTTConfig(BaseModel):
    enabled: bool = False
    broker_host: str = "localhost"
    broker_port: int = 1883
    username: str = ""
    password: str = ""
    topic_prefix: str = "power_guard"
    power_topic: str = ""  # empty = do not read meter values from MQTT


class PersistenceConfig(BaseModel):
    save_retry_interval_seconds: float = 3.0
    max_save_retries: int = 5


class APIConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080


class ResilienceConfig(BaseModel):
    max_consecutive_failures: int = 3


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "json"  # json or console
    file: str = ""
    buffer_size: int = Field(500, ge=1)  # entries kept for GET /api/logs
    levels: dict[str, str] = Field(default_factory=dict)  # per-logger overrides


class DBConfig(BaseModel):
    path: str = "power_guard.db"


class AppConfig(BaseModel):
    """Root configuration model containing all system settings."""

    guard: GuardConfig = GuardConfig()
    meter: MeterConfig = MeterConfig()
    registry: RegistryConfig = RegistryConfig()
    mqtt: MQTTConfig = MQTTConfig()
    persistence: PersistenceConfig = PersistenceConfig()
    api: APIConfig = APIConfig()
    resilience: ResilienceConfig = ResilienceConfig()
    logging: LoggingConfig = LoggingConfig()
    db: DBConfig = DBConfig()
