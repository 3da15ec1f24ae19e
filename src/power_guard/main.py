"""Power Guard application entry point and lifecycle orchestrator.

Startup order: config, logging, SQLite, device registry, notification sinks,
the control loop driver, MQTT, then the HTTP API. Shutdown runs in reverse.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import yaml

from power_guard import __version__
from power_guard.config.manager import ConfigManager
from power_guard.config.schema import AppConfig
from power_guard.db.engine import close_db, init_db
from power_guard.db.repository import EventHistorySink, Repository, SqliteSettingsStore
from power_guard.devices.base import DeviceRegistry
from power_guard.guard.driver import ControlLoopDriver
from power_guard.guard.notifications import LoggingNotificationSink, Notifier
from power_guard.logging.structured import setup_logging
from power_guard.resilience.health_check import METER, SETTINGS_STORE, HealthChecker

logger = logging.getLogger(__name__)

STATUS_PUBLISH_INTERVAL_SECONDS = 10.0
CONFIG_WATCH_INTERVAL_SECONDS = 5.0


class Application:
    """Owns every long-lived component and the order they start and stop in."""

    def __init__(self, config: AppConfig, config_manager: ConfigManager) -> None:
        self.config = config
        self.config_manager = config_manager
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()

        self._registry: DeviceRegistry | None = None
        self._mqtt_client = None
        self._driver: ControlLoopDriver | None = None
        self._server = None

    @property
    def driver(self) -> ControlLoopDriver | None:
        return self._driver

    async def start(self) -> None:
        """Bring the guard up and block until stop() or request_stop()."""
        logger.info("Power Guard %s starting (limit %.0fW)", __version__, self.config.guard.power_limit_w)
        self._running = True
        self._stop_event.clear()

        # ── 1. Persistence ───────────────────────────────────
        repo = Repository(await init_db(self.config.db.path))

        # ── 2. Devices, health, notification sinks ───────────
        self._registry = self._create_registry()
        health = HealthChecker(self.config.resilience.max_consecutive_failures)
        for component in (METER, SETTINGS_STORE):
            health.register(component)
        notifier = Notifier([LoggingNotificationSink(), EventHistorySink(repo)])

        # ── 3. Guard ─────────────────────────────────────────
        self._driver = ControlLoopDriver(
            config=self.config,
            registry=self._registry,
            store=SqliteSettingsStore(repo),
            notifier=notifier,
            health=health,
        )
        self.config_manager.add_listener(self._on_config_reload)

        # ── 4. MQTT bridge ───────────────────────────────────
        publisher = None
        if self.config.mqtt.enabled:
            self._mqtt_client, publisher = await self._setup_mqtt(self._driver, notifier)

        # ── 5. Background work ───────────────────────────────
        self._spawn(self._driver.run(), "control_loop")
        watch_registry = getattr(self._registry, "start", None)
        if watch_registry is not None:
            await watch_registry()
        self._spawn(
            self._every(CONFIG_WATCH_INTERVAL_SECONDS, self._check_config_file),
            "config_watch",
        )
        if self._mqtt_client is not None:
            self._spawn(self._mqtt_client.listen(), "mqtt_listener")
        if publisher is not None:
            await publisher.publish_online(True)
            driver = self._driver
            self._spawn(
                self._every(STATUS_PUBLISH_INTERVAL_SECONDS, lambda: publisher.publish_status(driver.get_status())),
                "status_publisher",
            )

        # ── 6. HTTP API ──────────────────────────────────────
        if self.config.api.enabled:
            await self._serve_api(repo)
        else:
            logger.info("HTTP API disabled, running headless")
            await self._stop_event.wait()

    def request_stop(self) -> None:
        """Make start() return; the caller then awaits stop()."""
        self._stop_event.set()
        if self._server is not None:
            self._server.should_exit = True

    async def stop(self) -> None:
        """Shut down in reverse start order. Safe to call more than once."""
        if not self._running:
            return
        logger.info("Power Guard stopping")
        self._running = False
        self.request_stop()

        if self._driver is not None:
            self._driver.stop()
        # the control loop drains on its own; everything else is cancelled
        for task in self._tasks:
            if task.get_name() != "control_loop":
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._mqtt_client is not None:
            from power_guard.mqtt.topics import build_topics

            status_topic = build_topics(self.config.mqtt.topic_prefix)["status"]
            await self._mqtt_client.publish(status_topic, "offline", retain=True)
            await self._mqtt_client.disconnect()

        close_registry = getattr(self._registry, "close", None)
        if close_registry is not None:
            try:
                await close_registry()
            except Exception:
                logger.exception("Device registry did not close cleanly")

        await close_db()
        self._server = None
        logger.info("Power Guard stopped")

    # ── Config changes ───────────────────────────────────────

    def _on_config_reload(self, config: AppConfig) -> None:
        """Listener for ConfigManager reloads (API saves and file edits)."""
        self.config = config
        if self._driver is None:
            return
        task = self._spawn(self._driver.update_config(config), "config_reload")
        task.add_done_callback(self._forget_task)

    def _check_config_file(self) -> None:
        if self.config_manager.reload_if_changed():
            logger.info("Applied edited %s", self.config_manager.user_path)

    def _forget_task(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Applying reloaded config failed: %s", task.exception())

    # ── Component factories ──────────────────────────────────

    def _create_registry(self) -> DeviceRegistry:
        cfg = self.config.registry
        if cfg.adapter == "http":
            from power_guard.devices.adapters.http import HttpDeviceRegistry

            logger.info("Device registry: HTTP hub at %s", cfg.base_url)
            return HttpDeviceRegistry(cfg)

        from power_guard.devices.adapters.memory import InMemoryDeviceRegistry

        logger.warning("Device registry: in-memory (dry run, nothing is switched)")
        return InMemoryDeviceRegistry()

    async def _setup_mqtt(self, driver: ControlLoopDriver, notifier: Notifier):
        """Connect the broker client; returns (client, publisher or None)."""
        from power_guard.mqtt.client import MQTTClient
        from power_guard.mqtt.publisher import MQTTNotificationSink, MQTTPublisher
        from power_guard.mqtt.subscriber import GuardCommandSubscriber

        client = MQTTClient(self.config.mqtt)
        await client.connect()
        if not client.is_connected:
            logger.warning("MQTT broker unreachable, status publishing disabled")
            return client, None

        prefix = self.config.mqtt.topic_prefix
        notifier.add_sink(MQTTNotificationSink(client.publish, prefix))
        subscriber = GuardCommandSubscriber(driver, self.config.mqtt)
        for topic in subscriber.topics:
            client.subscribe(topic, subscriber.handle_message)
        logger.info("MQTT bridge up, %d command topic(s)", len(subscriber.topics))
        return client, MQTTPublisher(publish_fn=client.publish, topic_prefix=prefix)

    async def _serve_api(self, repo: Repository) -> None:
        import uvicorn

        from power_guard.dashboard.app import create_app

        api = create_app(self.config, self._driver, config_manager=self.config_manager, repo=repo)
        api.state.application = self
        server = uvicorn.Server(uvicorn.Config(
            api, host=self.config.api.host, port=self.config.api.port, log_level="warning",
        ))
        # signals are handled by main()
        server.install_signal_handlers = lambda: None
        self._server = server
        logger.info("API listening on http://%s:%d", self.config.api.host, self.config.api.port)
        await server.serve()

    # ── Background loops ─────────────────────────────────────

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.append(task)
        return task

    async def _every(self, interval: float, fn) -> None:
        """Call ``fn`` (sync or async) every ``interval`` seconds until stopped."""
        while not self._stop_event.is_set():
            try:
                result = fn()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Periodic task failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="power-guard", description="Household power-limit guard")
    parser.add_argument(
        "--config",
        default=os.environ.get("POWER_GUARD_CONFIG", "config.yaml"),
        help="user config file, written by the API",
    )
    parser.add_argument(
        "--defaults",
        default=os.environ.get("POWER_GUARD_DEFAULTS", "config.defaults.yaml"),
    )
    parser.add_argument("--check", action="store_true", help="validate the configuration and exit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


async def _serve(app: Application) -> None:
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, app.request_stop)
    try:
        await app.start()
    finally:
        await app.stop()


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``power-guard`` command."""
    args = parse_args(argv)
    config_manager = ConfigManager(Path(args.defaults), Path(args.config))
    try:
        config = config_manager.load()
    except (ValueError, yaml.YAMLError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    if args.check:
        print(config_manager.to_json())
        return 0

    setup_logging(config.logging)
    app = Application(config, config_manager)
    try:
        asyncio.run(_serve(app))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
