"""Control loop driver: turns meter readings into guard decisions.

Producers (meter capability events, the poll fallback, MQTT power messages,
forced re-checks) only enqueue. A single consumer task smooths each reading
and runs the evaluation, so evaluations never interleave.

Background tasks besides the consumer:
1. Meter poll (fallback for meters that only report on large changes)
2. Meter watchdog (reconnect when silent, flag the meter unavailable)
3. Settings save-retry processor
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from power_guard.config.schema import AppConfig, GuardConfig, Profile
from power_guard.devices import capabilities as caps
from power_guard.devices.base import (
    DeviceCommandError,
    DeviceRegistry,
    NotificationEvent,
    SettingsStore,
    Subscription,
)
from power_guard.guard.allocator import ChargerCurrentAllocator
from power_guard.guard.hysteresis import HysteresisDetector
from power_guard.guard.notifications import LoggingNotificationSink, Notifier
from power_guard.guard.save_queue import SaveRetryQueue
from power_guard.guard.smoother import SampleSmoother
from power_guard.guard.state_machine import MitigationStateMachine
from power_guard.guard.status import GuardStatus, MitigatedDevice, derive_charger_status
from power_guard.logging.context import log_context
from power_guard.resilience.health_check import METER, SETTINGS_STORE, HealthChecker

logger = logging.getLogger(__name__)

PROFILE_KEY = "profile"
ENABLED_KEY = "enabled"
STATUS_LOG_LIMIT = 20


@dataclass
class PowerSample:
    value: Any
    received_at: float
    source: str = "event"  # event, poll, mqtt


class _Recheck:
    def __init__(self, future: asyncio.Future | None = None) -> None:
        self.future = future


@dataclass
class DriverState:
    samples_processed: int = 0
    last_sample_at: float | None = None
    last_sample_source: str = ""
    meter_connected: bool = False
    meter_available: bool = False
    meter_connected_at: float = 0.0
    meter_last_seen: float | None = None
    last_event_at: float = 0.0
    is_running: bool = False


class ControlLoopDriver:
    """Owns the guard components and the tasks that feed them."""

    def __init__(
        self,
        config: AppConfig,
        registry: DeviceRegistry,
        store: SettingsStore,
        notifier: Notifier | None = None,
        health: HealthChecker | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._file_config = config
        self._overrides: dict[str, Any] = {}  # runtime profile/enabled, persisted in the store
        self._registry = registry
        self._store = store
        self._clock = clock
        self.notifier = notifier or Notifier([LoggingNotificationSink()])
        self.health = health or HealthChecker(config.resilience.max_consecutive_failures, clock=clock)
        self.smoother = SampleSmoother(config.guard)
        self.hysteresis = HysteresisDetector(config.guard.hysteresis_count)
        self.save_queue = SaveRetryQueue(store, config.persistence.max_save_retries)
        self.state_machine = MitigationStateMachine(
            config.guard,
            registry,
            store,
            self.notifier,
            allocator=ChargerCurrentAllocator(registry, clock=clock),
            save_queue=self.save_queue,
            clock=clock,
        )
        self._state = DriverState()
        self._queue: asyncio.Queue[PowerSample | _Recheck] = asyncio.Queue()
        self._stop_event = asyncio.Event()
        self._meter_subscription: Subscription | None = None
        self._device_subscriptions: list[Subscription] = []
        self._pending: set[asyncio.Task] = set()

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def guard(self) -> GuardConfig:
        return self._config.guard

    @property
    def state(self) -> DriverState:
        return self._state

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        """Recover persisted state and attach to devices. Does not start tasks."""
        await self._load_overrides()
        await self.state_machine.load()
        self._store.on_change(PROFILE_KEY, self._on_profile_setting)
        self._subscribe_devices()
        try:
            await self.state_machine.apply_circuit_limits()
        except Exception:
            logger.exception("Applying circuit limits failed")
        await self.connect_meter()

    async def run(self) -> None:
        """Run until stopped."""
        self._state.is_running = True
        self._stop_event.clear()
        await self.start()
        logger.info(
            "Power guard running (limit %.0fW, profile %s, %d priority device(s))",
            self.guard.effective_limit_w, self.guard.profile.value, len(self.guard.priority_list),
        )
        tasks = [
            asyncio.create_task(self._consume()),
            asyncio.create_task(self._periodic(self._config.meter.poll_interval_seconds, self.poll_meter)),
            asyncio.create_task(self._periodic(self._config.meter.watchdog_interval_seconds, self.check_meter)),
            asyncio.create_task(self._periodic(
                self._config.persistence.save_retry_interval_seconds, self.process_save_queue,
            )),
        ]
        try:
            await self._stop_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            self._unsubscribe_all()
            self._state.is_running = False
            logger.info("Power guard stopped after %d samples", self._state.samples_processed)

    def stop(self) -> None:
        self._stop_event.set()

    # ── Ingestion ────────────────────────────────────────────

    def submit(self, value: Any, source: str = "event") -> None:
        """Enqueue a raw meter reading for the evaluator."""
        now = self._clock()
        self._state.meter_last_seen = now
        self._queue.put_nowait(PowerSample(value, now, source))

    async def request_recheck(self) -> None:
        """Run a forced re-check on the evaluator task and wait for it."""
        if not self._state.is_running:
            await self.force_recheck()
            return
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Recheck(future))
        await future

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if isinstance(item, _Recheck):
                    await self.force_recheck()
                else:
                    await self.process_sample(item)
            except Exception:
                logger.exception("Evaluation error")
            finally:
                if isinstance(item, _Recheck) and item.future and not item.future.done():
                    item.future.set_result(None)
                self._queue.task_done()

    async def process_sample(self, sample: PowerSample) -> float | None:
        """Smooth one reading and evaluate it. Returns the smoothed value."""
        smoothed = self.smoother.push(sample.value)
        self._state.samples_processed += 1
        self._state.last_sample_at = sample.received_at
        self._state.last_sample_source = sample.source
        if smoothed is None:
            return None
        with log_context(sample_source=sample.source, smoothed_w=round(smoothed)):
            await self._evaluate(smoothed)
        return smoothed

    async def _evaluate(self, smoothed: float) -> None:
        guard = self.guard
        if not guard.enabled:
            return
        limit = guard.effective_limit_w
        over_limit = smoothed > limit
        sm = self.state_machine

        # Chargers follow every reading; restore runs them back up under the limit
        if over_limit or any(r.allocator_managed for r in sm.ledger):
            await sm.adjust_chargers(smoothed)

        result = self.hysteresis.update(smoothed, limit)
        if result.triggered:
            self.notifier.emit(NotificationEvent.POWER_LIMIT_EXCEEDED, {
                "power": round(smoothed),
                "limit": round(limit),
            })
        if result.should_mitigate:
            await sm.trigger_mitigation(smoothed)
        elif not over_limit and len(sm.ledger) > 0:
            await sm.trigger_restore()

    async def force_recheck(self) -> None:
        """Re-evaluate now, bypassing cooldowns but not per-device guards."""
        guard = self.guard
        if not guard.enabled:
            return
        smoothed = self.smoother.average
        if smoothed is None:
            return
        limit = guard.effective_limit_w
        logger.info("Forced re-check: power %.0fW, limit %.0fW", smoothed, limit)
        sm = self.state_machine
        with log_context(trigger="recheck", smoothed_w=round(smoothed)):
            sm.allocator.reset_cooldown()
            await sm.adjust_chargers(smoothed, bypass_cooldown=True)
            if smoothed > limit:
                self.hysteresis.force_over_limit()
                await sm.trigger_mitigation(smoothed, bypass_cooldown=True)
            elif len(sm.ledger) > 0:
                await sm.trigger_restore()

    # ── Runtime control ──────────────────────────────────────

    async def set_profile(self, profile: Profile | str) -> bool:
        """Switch the operating profile. Returns False if it was already active."""
        profile = Profile(profile)
        if profile == self.guard.profile:
            return False
        self._overrides["profile"] = profile
        self._replace_guard(self.guard.model_copy(update={"profile": profile}))
        await self._save_setting(PROFILE_KEY, profile.value)
        self.state_machine.add_log(f"Profile changed to {profile.value}")
        logger.info("Profile changed to %s (limit %.0fW)", profile.value, self.guard.effective_limit_w)
        self.notifier.emit(NotificationEvent.PROFILE_CHANGED, {"profile": profile.value})
        await self.request_recheck()
        return True

    async def set_enabled(self, enabled: bool) -> None:
        if enabled == self.guard.enabled:
            return
        self._overrides["enabled"] = enabled
        self._replace_guard(self.guard.model_copy(update={"enabled": enabled}))
        await self._save_setting(ENABLED_KEY, enabled)
        self.state_machine.add_log("Guard enabled" if enabled else "Guard disabled")
        logger.info("Power guard %s", "enabled" if enabled else "disabled")
        if enabled:
            await self.request_recheck()
        else:
            self.hysteresis.reset()

    async def update_config(self, config: AppConfig) -> None:
        """Adopt a reloaded configuration.

        A profile or enabled flag set at runtime stays in force unless the
        reloaded file itself changes that field, in which case the file wins
        and the stored value follows it.
        """
        if config == self._file_config:
            return
        old = self.guard
        previous_file = self._file_config.guard
        kept: dict[str, Any] = {}
        superseded: dict[str, Any] = {}
        for field_name, value in self._overrides.items():
            file_value = getattr(config.guard, field_name)
            if file_value == getattr(previous_file, field_name):
                kept[field_name] = value
                continue
            superseded[PROFILE_KEY if field_name == "profile" else ENABLED_KEY] = (
                file_value.value if isinstance(file_value, Profile) else file_value
            )
        self._overrides = kept
        meter_changed = config.meter != self._file_config.meter
        self._file_config = config
        self._config = config
        self._replace_guard(config.guard.model_copy(update=kept))
        for key, value in superseded.items():
            await self._save_setting(key, value)
        self._subscribe_devices()
        if meter_changed:
            await self.connect_meter()

        guard = self.guard
        if guard.profile != old.profile:
            self.state_machine.add_log(f"Profile changed to {guard.profile.value}")
            self.notifier.emit(NotificationEvent.PROFILE_CHANGED, {"profile": guard.profile.value})
        changed = (
            old.enabled != guard.enabled
            or old.power_limit_w != guard.power_limit_w
            or old.profile != guard.profile
        )
        logger.info("Configuration updated%s", " (re-checking)" if changed else "")
        if changed:
            await self.request_recheck()

    async def reset_statistics(self) -> None:
        """Clear samples, counters and the event log. Devices are left as they are."""
        self.smoother.reset()
        self.hysteresis.reset()
        await self.state_machine.clear()
        self._state.samples_processed = 0
        logger.info("Statistics reset")

    def _replace_guard(self, guard: GuardConfig) -> None:
        self._config = self._config.model_copy(update={"guard": guard})
        self.smoother.update_config(guard)
        self.hysteresis.threshold = guard.hysteresis_count
        self.state_machine.update_config(guard)

    # ── Status ───────────────────────────────────────────────

    def get_status(self) -> GuardStatus:
        """Lock-free snapshot; may be one evaluation stale."""
        guard = self.guard
        sm = self.state_machine
        return GuardStatus(
            enabled=guard.enabled,
            profile=guard.profile.value,
            current_power_w=self.smoother.average,
            limit_w=guard.effective_limit_w,
            over_limit_count=self.hysteresis.over_limit_count,
            hysteresis_count=guard.hysteresis_count,
            is_over_limit=self.hysteresis.is_over_limit,
            mitigated_devices=[
                MitigatedDevice(
                    device_id=r.device_id,
                    name=r.name or r.device_id,
                    action=r.action.value,
                    mitigated_at=r.mitigated_at,
                    current_target_a=r.current_target_a,
                )
                for r in sm.ledger
            ],
            charger_statuses=[
                derive_charger_status(e, sm.allocator.telemetry(e.device_id), sm.ledger.get(e.device_id))
                for e in guard.charger_entries()
            ],
            meter_connected=self._state.meter_connected,
            meter_last_seen=self._state.meter_last_seen,
            log=[entry.to_dict() for entry in sm.log.recent(STATUS_LOG_LIMIT)],
        )

    # ── Meter ────────────────────────────────────────────────

    async def connect_meter(self) -> bool:
        """(Re)subscribe to the meter's power capability."""
        meter = self._config.meter
        if self._meter_subscription is not None:
            self._meter_subscription.cancel()
            self._meter_subscription = None
        self._state.meter_connected = False
        if not meter.device_id:
            logger.info("No meter configured; waiting for readings from other sources")
            return False
        try:
            device = await self._registry.get_device(meter.device_id)
        except DeviceCommandError as e:
            self.health.record_failure(METER, str(e))
            logger.warning("Meter connection failed: %s", e)
            return False
        if device is None or not device.has(meter.capability):
            self.health.record_failure(METER, "meter not found")
            logger.warning("Meter %s not found or lacks %s", meter.device_id, meter.capability)
            return False

        self._meter_subscription = self._registry.subscribe_capability(
            meter.device_id, meter.capability, self._on_meter_value,
        )
        self._state.meter_connected = True
        self._state.meter_connected_at = self._clock()
        self.health.record_success(METER)
        logger.info("Meter connected: '%s'", device.display_name)
        return True

    def _on_meter_value(self, value: Any) -> None:
        self._state.last_event_at = self._clock()
        self.submit(value, "event")

    async def poll_meter(self) -> bool:
        """Read the meter directly unless an event arrived recently."""
        meter = self._config.meter
        if not self._state.meter_connected:
            return False
        if self._clock() - self._state.last_event_at < meter.event_grace_seconds:
            return False
        try:
            device = await self._registry.get_device(meter.device_id)
        except DeviceCommandError as e:
            self.health.record_failure(METER, str(e))
            logger.debug("Meter poll failed: %s", e)
            return False
        value = device.values.get(meter.capability) if device else None
        if value is None:
            return False
        self.health.record_success(METER)
        logger.debug("Meter poll fallback reading: %sW", value)
        self.submit(value, "poll")
        return True

    async def check_meter(self) -> None:
        """Watchdog: flag a silent meter and reconnect when it stays silent."""
        meter = self._config.meter
        now = self._clock()
        last_seen = self._state.meter_last_seen
        reference = max(last_seen or 0.0, self._state.meter_connected_at)
        available = last_seen is not None and now - last_seen <= meter.stale_after_seconds
        if self._state.meter_available and not available:
            logger.warning("Meter unavailable: no reading for %.0fs", now - (last_seen or now))
        self._state.meter_available = available

        if not meter.device_id:
            return
        if not self._state.meter_connected or now - reference > meter.reconnect_after_seconds:
            logger.info("Meter silent or disconnected, reconnecting")
            await self.connect_meter()

    async def process_save_queue(self) -> None:
        if len(self.save_queue) == 0:
            return
        if await self.save_queue.process_one():
            self.health.record_success(SETTINGS_STORE)
        else:
            self.health.record_failure(SETTINGS_STORE, "settings save retry failed")

    # ── Internals ────────────────────────────────────────────

    async def _periodic(self, interval: float, func: Callable[[], Any]) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await func()
            except Exception:
                logger.exception("Periodic task %s failed", getattr(func, "__name__", func))

    def _subscribe_devices(self) -> None:
        """Track charger telemetry and device start times for the current priority list."""
        for sub in self._device_subscriptions:
            sub.cancel()
        self._device_subscriptions = []
        for entry in self.guard.priority_list:
            if not entry.enabled:
                continue
            self._device_subscriptions.append(
                self._registry.subscribe_capability(
                    entry.device_id, caps.ONOFF, self._onoff_callback(entry.device_id),
                )
            )
        self.state_machine.allocator.track(self.guard.charger_entries())

    def _onoff_callback(self, device_id: str) -> Callable[[Any], None]:
        def on_change(value: Any) -> None:
            if value is True:
                self.state_machine.note_device_started(device_id)
        return on_change

    def _unsubscribe_all(self) -> None:
        for sub in self._device_subscriptions:
            sub.cancel()
        self._device_subscriptions = []
        self.state_machine.allocator.untrack_all()
        if self._meter_subscription is not None:
            self._meter_subscription.cancel()
            self._meter_subscription = None

    async def _load_overrides(self) -> None:
        """Profile and enabled flag set at runtime survive restarts."""
        try:
            profile = await self._store.get(PROFILE_KEY)
            enabled = await self._store.get(ENABLED_KEY)
        except Exception as e:
            self.health.record_failure(SETTINGS_STORE, str(e))
            logger.warning("Could not read runtime settings: %s", e)
            return
        update: dict[str, Any] = {}
        if profile is not None:
            try:
                update["profile"] = Profile(profile)
            except ValueError:
                logger.warning("Ignoring unknown stored profile %r", profile)
        if isinstance(enabled, bool):
            update["enabled"] = enabled
        self._overrides.update(update)
        if update:
            self._replace_guard(self.guard.model_copy(update=update))

    async def _save_setting(self, key: str, value: Any) -> None:
        try:
            await self._store.set(key, value)
        except Exception as e:
            self.health.record_failure(SETTINGS_STORE, str(e))
            logger.warning("Failed to save '%s', queued for retry: %s", key, e)
            self.save_queue.enqueue(key, value)

    def _on_profile_setting(self, key: str, value: Any) -> None:
        try:
            profile = Profile(value)
        except ValueError:
            logger.warning("Ignoring unknown profile setting %r", value)
            return
        if profile == self.guard.profile:
            return
        task = asyncio.create_task(self.set_profile(profile))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
