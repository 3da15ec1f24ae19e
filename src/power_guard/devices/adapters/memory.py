"""In-memory device registry and settings store.

Used for dry-run operation (no home automation platform attached) and as the
collaborators in tests. Writes are recorded in ``commands`` and can be made to
fail per device.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import replace
from typing import Any

from power_guard.devices.base import (
    CapabilityCallback,
    DeviceCommandError,
    DeviceState,
    SettingsCallback,
)

logger = logging.getLogger(__name__)


class _CallbackSubscription:
    def __init__(self, callbacks: list, callback: Any) -> None:
        self._callbacks = callbacks
        self._callback = callback

    def cancel(self) -> None:
        if self._callback in self._callbacks:
            self._callbacks.remove(self._callback)


class InMemoryDeviceRegistry:
    """Device registry backed by a dict of DeviceState."""

    def __init__(self) -> None:
        self._devices: dict[str, DeviceState] = {}
        self._subscribers: dict[tuple[str, str], list[CapabilityCallback]] = {}
        self._failing: set[str] = set()
        self.commands: list[tuple[str, str, Any]] = []

    def add_device(
        self,
        device_id: str,
        capabilities: dict[str, Any],
        name: str = "",
        driver_id: str = "",
        device_class: str = "",
    ) -> DeviceState:
        """Register a device; ``capabilities`` maps capability name to its initial value."""
        device = DeviceState(
            device_id=device_id,
            name=name,
            driver_id=driver_id,
            device_class=device_class,
            capabilities=frozenset(capabilities),
            values=dict(capabilities),
        )
        self._devices[device_id] = device
        return device

    def remove_device(self, device_id: str) -> None:
        self._devices.pop(device_id, None)

    def set_failing(self, device_id: str, failing: bool = True) -> None:
        """Make every write to the device raise DeviceCommandError."""
        if failing:
            self._failing.add(device_id)
        else:
            self._failing.discard(device_id)

    def value(self, device_id: str, capability: str) -> Any:
        return self._devices[device_id].values.get(capability)

    def push_value(self, device_id: str, capability: str, value: Any) -> None:
        """Simulate a value change reported by the device itself."""
        device = self._devices.get(device_id)
        if device is not None:
            device.values[capability] = value
        self._dispatch(device_id, capability, value)

    async def get_device(self, device_id: str) -> DeviceState | None:
        device = self._devices.get(device_id)
        if device is None:
            return None
        return replace(device, values=dict(device.values))

    async def set_capability_value(self, device_id: str, capability: str, value: Any) -> None:
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceCommandError(f"Unknown device {device_id}")
        if device_id in self._failing:
            raise DeviceCommandError(f"Device {device_id} is not responding")
        if capability not in device.capabilities:
            raise DeviceCommandError(f"Device {device_id} has no capability {capability}")
        self.commands.append((device_id, capability, value))
        device.values[capability] = value
        self._dispatch(device_id, capability, value)

    def subscribe_capability(
        self, device_id: str, capability: str, on_change: CapabilityCallback,
    ) -> _CallbackSubscription:
        callbacks = self._subscribers.setdefault((device_id, capability), [])
        callbacks.append(on_change)
        return _CallbackSubscription(callbacks, on_change)

    def subscriber_count(self, device_id: str, capability: str) -> int:
        return len(self._subscribers.get((device_id, capability), []))

    def _dispatch(self, device_id: str, capability: str, value: Any) -> None:
        for callback in list(self._subscribers.get((device_id, capability), [])):
            try:
                callback(value)
            except Exception:
                logger.exception("Capability callback error for %s.%s", device_id, capability)


class InMemorySettingsStore:
    """Settings store backed by a dict. Values are deep-copied on the way in and out."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})
        self._listeners: dict[str, list[SettingsCallback]] = {}
        self.fail_writes = 0  # number of upcoming set() calls that raise
        self.writes = 0

    async def get(self, key: str) -> Any:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise OSError(f"Settings write for '{key}' failed")
        self._data[key] = copy.deepcopy(value)
        self.writes += 1
        for callback in list(self._listeners.get(key, [])):
            try:
                callback(key, value)
            except Exception:
                logger.exception("Settings listener error for '%s'", key)

    def on_change(self, key: str, callback: SettingsCallback) -> None:
        self._listeners.setdefault(key, []).append(callback)
