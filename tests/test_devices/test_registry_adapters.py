"""Tests for the device registry and settings store adapters."""

from __future__ import annotations

import json

import httpx
import pytest

from power_guard.config.schema import RegistryConfig
from power_guard.devices.adapters.http import HttpDeviceRegistry
from power_guard.devices.adapters.memory import InMemoryDeviceRegistry, InMemorySettingsStore
from power_guard.devices.base import DeviceCommandError, DeviceRegistry, SettingsStore


# ── Helpers ──────────────────────────────────────────────────


class FakePlatform:
    """Minimal device API served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.devices = {
            "heater": {
                "id": "heater",
                "name": "Heater",
                "driver_id": "homey:plug",
                "class": "socket",
                "capabilities": {"onoff": True, "measure_power": 1800},
            },
        }
        self.writes: list[tuple[str, str, object]] = []
        self.reads: list[str] = []
        self.down = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("platform unreachable", request=request)
        parts = request.url.path.strip("/").split("/")  # api, devices, id[, capabilities, cap]
        device = self.devices.get(parts[2])
        if device is None:
            return httpx.Response(404, json={"error": "not found"})
        if request.method == "GET":
            self.reads.append(parts[2])
            return httpx.Response(200, json=device)
        if request.method == "PUT":
            capability = parts[4]
            if capability not in device["capabilities"]:
                return httpx.Response(400, json={"error": "unknown capability"})
            value = json.loads(request.content)["value"]
            device["capabilities"][capability] = value
            self.writes.append((parts[2], capability, value))
            return httpx.Response(200, json={})
        return httpx.Response(405)


def _make_http_registry(platform: FakePlatform) -> HttpDeviceRegistry:
    client = httpx.AsyncClient(transport=httpx.MockTransport(platform.handler))
    return HttpDeviceRegistry(RegistryConfig(adapter="http", base_url="http://hub.local/api/"), client=client)


# ── Protocol Tests ───────────────────────────────────────────


class TestProtocols:
    def test_memory_registry_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryDeviceRegistry(), DeviceRegistry)

    def test_http_registry_satisfies_protocol(self) -> None:
        registry = HttpDeviceRegistry(RegistryConfig(), client=httpx.AsyncClient())
        assert isinstance(registry, DeviceRegistry)

    def test_memory_store_satisfies_protocol(self) -> None:
        assert isinstance(InMemorySettingsStore(), SettingsStore)


# ── In-memory adapters ───────────────────────────────────────


@pytest.mark.asyncio
class TestInMemoryDeviceRegistry:
    async def test_get_device_returns_copy(self, registry: InMemoryDeviceRegistry) -> None:
        registry.add_device("plug", {"onoff": True}, name="Plug")
        device = await registry.get_device("plug")
        device.values["onoff"] = False
        assert registry.value("plug", "onoff") is True
        assert device.display_name == "Plug"

    async def test_unknown_device(self, registry: InMemoryDeviceRegistry) -> None:
        assert await registry.get_device("nope") is None
        with pytest.raises(DeviceCommandError):
            await registry.set_capability_value("nope", "onoff", False)

    async def test_unknown_capability_rejected(self, registry: InMemoryDeviceRegistry) -> None:
        registry.add_device("plug", {"onoff": True})
        with pytest.raises(DeviceCommandError):
            await registry.set_capability_value("plug", "dim", 0.5)

    async def test_writes_notify_subscribers(self, registry: InMemoryDeviceRegistry) -> None:
        registry.add_device("plug", {"onoff": True})
        seen: list[object] = []
        sub = registry.subscribe_capability("plug", "onoff", seen.append)

        await registry.set_capability_value("plug", "onoff", False)
        registry.push_value("plug", "onoff", True)
        sub.cancel()
        registry.push_value("plug", "onoff", False)

        assert seen == [False, True]
        assert registry.commands == [("plug", "onoff", False)]

    async def test_failing_callback_is_contained(self, registry: InMemoryDeviceRegistry) -> None:
        registry.add_device("plug", {"onoff": True})
        seen: list[object] = []

        def broken(_value: object) -> None:
            raise RuntimeError("boom")

        registry.subscribe_capability("plug", "onoff", broken)
        registry.subscribe_capability("plug", "onoff", seen.append)
        await registry.set_capability_value("plug", "onoff", False)
        assert seen == [False]


@pytest.mark.asyncio
class TestInMemorySettingsStore:
    async def test_values_are_copied(self) -> None:
        store = InMemorySettingsStore()
        value = [{"device_id": "heater"}]
        await store.set("ledger", value)
        value.append({"device_id": "lamp"})
        stored = await store.get("ledger")
        assert stored == [{"device_id": "heater"}]

    async def test_fail_writes(self) -> None:
        store = InMemorySettingsStore()
        store.fail_writes = 1
        with pytest.raises(OSError):
            await store.set("profile", "strict")
        await store.set("profile", "strict")
        assert store.writes == 1

    async def test_on_change(self) -> None:
        store = InMemorySettingsStore()
        seen: list[tuple[str, object]] = []
        store.on_change("profile", lambda key, value: seen.append((key, value)))
        await store.set("profile", "solar")
        await store.set("enabled", False)
        assert seen == [("profile", "solar")]


# ── HTTP adapter ─────────────────────────────────────────────


@pytest.mark.asyncio
class TestHttpDeviceRegistry:
    async def test_get_device(self) -> None:
        registry = _make_http_registry(FakePlatform())
        device = await registry.get_device("heater")
        assert device.name == "Heater"
        assert device.driver_id == "homey:plug"
        assert device.device_class == "socket"
        assert device.has("onoff")
        assert device.values["measure_power"] == 1800

    async def test_missing_device_is_none(self) -> None:
        registry = _make_http_registry(FakePlatform())
        assert await registry.get_device("nope") is None

    async def test_unreachable_platform_raises(self) -> None:
        platform = FakePlatform()
        platform.down = True
        registry = _make_http_registry(platform)
        with pytest.raises(DeviceCommandError):
            await registry.get_device("heater")

    async def test_set_capability_value(self) -> None:
        platform = FakePlatform()
        registry = _make_http_registry(platform)
        await registry.set_capability_value("heater", "onoff", False)
        assert platform.writes == [("heater", "onoff", False)]

    async def test_rejected_write_raises(self) -> None:
        registry = _make_http_registry(FakePlatform())
        with pytest.raises(DeviceCommandError):
            await registry.set_capability_value("heater", "dim", 0.2)

    async def test_poll_dispatches_changes_once(self) -> None:
        platform = FakePlatform()
        registry = _make_http_registry(platform)
        seen: list[object] = []
        registry.subscribe_capability("heater", "measure_power", seen.append)

        await registry.poll_subscriptions()
        await registry.poll_subscriptions()
        platform.devices["heater"]["capabilities"]["measure_power"] = 2400
        await registry.poll_subscriptions()

        assert seen == [1800, 2400]

    async def test_cancelled_subscription_not_called(self) -> None:
        registry = _make_http_registry(FakePlatform())
        seen: list[object] = []
        sub = registry.subscribe_capability("heater", "onoff", seen.append)
        sub.cancel()
        await registry.poll_subscriptions()
        assert seen == []

    async def test_cancelled_subscriptions_stop_polling(self) -> None:
        platform = FakePlatform()
        registry = _make_http_registry(platform)
        seen: list[object] = []
        power = registry.subscribe_capability("heater", "measure_power", seen.append)
        onoff = registry.subscribe_capability("heater", "onoff", seen.append)
        await registry.poll_subscriptions()
        assert platform.reads == ["heater"]

        power.cancel()
        onoff.cancel()
        await registry.poll_subscriptions()

        assert platform.reads == ["heater"]

        registry.subscribe_capability("heater", "measure_power", seen.append)
        await registry.poll_subscriptions()
        assert seen == [1800, True, 1800]

    async def test_bearer_token(self) -> None:
        registry = HttpDeviceRegistry(RegistryConfig(token="secret"))
        assert registry._client.headers["Authorization"] == "Bearer secret"
        await registry.close()

    async def test_start_and_stop_watch(self) -> None:
        registry = _make_http_registry(FakePlatform())
        await registry.start()
        assert registry._watch_task is not None
        await registry.stop()
        assert registry._watch_task is None
