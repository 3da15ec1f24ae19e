"""Protocols for the external collaborators the engine talks to."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol, runtime_checkable

CapabilityCallback = Callable[[Any], None]
SettingsCallback = Callable[[str, Any], None]


class DeviceCommandError(Exception):
    """A capability write was rejected or could not be delivered."""


@dataclass
class DeviceState:
    """Live view of a device: its capability set and current values."""

    device_id: str
    name: str = ""
    driver_id: str = ""
    device_class: str = ""
    capabilities: frozenset[str] = frozenset()
    values: dict[str, Any] = field(default_factory=dict)

    def has(self, capability: str) -> bool:
        return capability in self.capabilities

    def value(self, capability: str, default: Any = None) -> Any:
        value = self.values.get(capability)
        return default if value is None else value

    @property
    def display_name(self) -> str:
        return self.name or self.device_id


class NotificationEvent(str, Enum):
    """Events emitted to the notification sink."""

    POWER_LIMIT_EXCEEDED = "power_limit_exceeded"
    MITIGATION_APPLIED = "mitigation_applied"
    MITIGATION_CLEARED = "mitigation_cleared"
    DEVICE_RESTORED = "device_restored"
    PROFILE_CHANGED = "profile_changed"


@runtime_checkable
class Subscription(Protocol):
    def cancel(self) -> None:
        """Stop delivering capability changes."""
        ...


@runtime_checkable
class DeviceRegistry(Protocol):
    """Device lookup and command interface of the home automation platform.

    Implementations: InMemoryDeviceRegistry, HttpDeviceRegistry.
    """

    async def get_device(self, device_id: str) -> DeviceState | None:
        """Return the device's live state, or None if it does not exist.

        Raises DeviceCommandError when the platform cannot be reached.
        """
        ...

    async def set_capability_value(self, device_id: str, capability: str, value: Any) -> None:
        """Write one capability value. Raises DeviceCommandError on failure."""
        ...

    def subscribe_capability(
        self, device_id: str, capability: str, on_change: CapabilityCallback,
    ) -> Subscription:
        """Call on_change with each new value of the capability."""
        ...


@runtime_checkable
class SettingsStore(Protocol):
    """Persistent key-value settings storage.

    Implementations: InMemorySettingsStore, SqliteSettingsStore.
    """

    async def get(self, key: str) -> Any:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    def on_change(self, key: str, callback: SettingsCallback) -> None:
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Fire-and-forget receiver for guard events."""

    async def emit(self, event: NotificationEvent, tokens: dict[str, Any]) -> None:
        ...
