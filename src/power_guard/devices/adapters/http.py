"""REST adapter for a home automation platform's device API.

Endpoints (relative to ``registry.base_url``):

    GET  /devices/{id}                       -> {"id", "name", "driver_id", "class",
                                                 "capabilities": {name: value}}
    PUT  /devices/{id}/capabilities/{name}   <- {"value": ...}

The API has no push channel, so capability subscriptions are served by
polling the subscribed devices and dispatching changed values.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from power_guard.config.schema import RegistryConfig
from power_guard.devices.base import CapabilityCallback, DeviceCommandError, DeviceState

logger = logging.getLogger(__name__)

_UNSET = object()


class _WatchSubscription:
    def __init__(self, registry: HttpDeviceRegistry, key: tuple[str, str], callback: CapabilityCallback) -> None:
        self._registry = registry
        self._key = key
        self._callback = callback

    def cancel(self) -> None:
        callbacks = self._registry._subscribers.get(self._key, [])
        if self._callback in callbacks:
            callbacks.remove(self._callback)
        if not callbacks:
            # nothing left to watch on this capability, stop polling for it
            self._registry._subscribers.pop(self._key, None)
            self._registry._last_values.pop(self._key, None)


class HttpDeviceRegistry:
    """Device registry talking to the platform over HTTP via httpx."""

    def __init__(self, config: RegistryConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        headers = {"Authorization": f"Bearer {config.token}"} if config.token else {}
        self._client = client or httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(config.timeout_seconds, connect=3.0),
        )
        self._owns_client = client is None
        self._base_url = config.base_url.rstrip("/")
        self._subscribers: dict[tuple[str, str], list[CapabilityCallback]] = {}
        self._last_values: dict[tuple[str, str], Any] = {}
        self._watch_task: asyncio.Task | None = None

    async def get_device(self, device_id: str) -> DeviceState | None:
        try:
            resp = await self._client.get(f"{self._base_url}/devices/{device_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise DeviceCommandError(f"Failed to read device {device_id}: {e}") from e
        return self._parse_device(device_id, data)

    async def set_capability_value(self, device_id: str, capability: str, value: Any) -> None:
        try:
            resp = await self._client.put(
                f"{self._base_url}/devices/{device_id}/capabilities/{capability}",
                json={"value": value},
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise DeviceCommandError(
                f"Failed to set {capability}={value!r} on {device_id}: {e}"
            ) from e
        logger.debug("Set %s.%s = %r", device_id, capability, value)
        self._last_values[(device_id, capability)] = value

    def subscribe_capability(
        self, device_id: str, capability: str, on_change: CapabilityCallback,
    ) -> _WatchSubscription:
        key = (device_id, capability)
        self._subscribers.setdefault(key, []).append(on_change)
        return _WatchSubscription(self, key, on_change)

    async def poll_subscriptions(self) -> None:
        """Fetch every subscribed device once and dispatch changed values."""
        device_ids = {device_id for device_id, _ in self._subscribers}
        for device_id in device_ids:
            try:
                device = await self.get_device(device_id)
            except DeviceCommandError as e:
                logger.debug("Watch poll failed: %s", e)
                continue
            if device is None:
                continue
            for (sub_id, capability), callbacks in list(self._subscribers.items()):
                if sub_id != device_id or not callbacks:
                    continue
                value = device.values.get(capability)
                key = (device_id, capability)
                if self._last_values.get(key, _UNSET) == value:
                    continue
                self._last_values[key] = value
                for callback in list(callbacks):
                    try:
                        callback(value)
                    except Exception:
                        logger.exception("Capability callback error for %s.%s", device_id, capability)

    async def start(self) -> None:
        if self._watch_task is None:
            self._watch_task = asyncio.create_task(self._watch_loop())

    async def stop(self) -> None:
        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None

    async def close(self) -> None:
        """Stop watching and close the HTTP client if we own it."""
        await self.stop()
        if self._owns_client:
            await self._client.aclose()

    async def _watch_loop(self) -> None:
        while True:
            try:
                await self.poll_subscriptions()
            except Exception:
                logger.exception("Capability watch error")
            await asyncio.sleep(self._config.watch_interval_seconds)

    @staticmethod
    def _parse_device(device_id: str, data: dict) -> DeviceState:
        values = data.get("capabilities") or {}
        return DeviceState(
            device_id=str(data.get("id", device_id)),
            name=data.get("name", ""),
            driver_id=data.get("driver_id", ""),
            device_class=data.get("class", ""),
            capabilities=frozenset(values),
            values=dict(values),
        )
