"""Configuration loading, saving, and change notification.

Precedence, lowest first: ``config.defaults.yaml``, the user ``config.yaml``,
then ``POWER_GUARD__<SECTION>__<KEY>`` environment variables, e.g.
``POWER_GUARD__GUARD__POWER_LIMIT_W=9000``. Environment values are parsed as
YAML scalars, so numbers and booleans keep their type.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

from power_guard.config.schema import AppConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "POWER_GUARD__"

ConfigListener = Callable[[AppConfig], None]


def env_overrides(environ: Mapping[str, str], prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """Nested override dict from ``PREFIX<SECTION>__<KEY>`` variables."""
    overrides: dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(prefix):
            continue
        path = [p.lower() for p in name[len(prefix):].split("__") if p]
        if not path:
            continue
        try:
            value = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            value = raw
        node = overrides
        for part in path[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[path[-1]] = value
    return overrides


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base, returning a new dict. Lists are replaced."""
    result = dict(base)
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class ConfigManager:
    """Owns the active AppConfig and notifies listeners whenever it is reloaded."""

    def __init__(
        self,
        defaults_path: Path | None = None,
        user_path: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._defaults_path = defaults_path or Path("config.defaults.yaml")
        self._user_path = user_path or Path("config.yaml")
        self._environ = os.environ if environ is None else environ
        self._config: AppConfig | None = None
        self._listeners: list[ConfigListener] = []
        self._user_mtime: float | None = None

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            raise RuntimeError("Config not loaded. Call load() first.")
        return self._config

    @property
    def user_path(self) -> Path:
        return self._user_path

    def add_listener(self, listener: ConfigListener) -> None:
        """Register a callback invoked with the new config after every reload."""
        self._listeners.append(listener)

    def load(self) -> AppConfig:
        """Build and validate the config. Listeners are notified on reloads only."""
        config = AppConfig.model_validate(self._merged(self._read_user()))
        self._user_mtime = self._mtime()
        is_reload = self._config is not None
        self._config = config
        logger.info(
            "Configuration %s (limit %.0fW, %d priority device(s))",
            "reloaded" if is_reload else "loaded",
            config.guard.power_limit_w, len(config.guard.priority_list),
        )
        if is_reload:
            self._notify(config)
        return config

    def reload_if_changed(self) -> bool:
        """Reload when the user file was edited on disk. Returns True if reloaded.

        An edit that fails validation is logged and the active config is kept.
        """
        if self._mtime() == self._user_mtime:
            return False
        try:
            self.load()
        except (ValueError, yaml.YAMLError) as e:
            self._user_mtime = self._mtime()
            logger.error("Ignoring invalid edit of %s: %s", self._user_path, e)
            return False
        return True

    def to_json(self) -> str:
        return self.config.model_dump_json(indent=2)

    def save_user_config(self, updates: dict[str, Any]) -> AppConfig:
        """Merge ``updates`` into the user file and reload.

        The result is validated before anything is written, so an invalid
        update leaves both the file and the active config untouched.
        """
        user = deep_merge(self._read_user(), updates)
        AppConfig.model_validate(self._merged(user))
        tmp = self._user_path.with_name(self._user_path.name + ".tmp")
        with open(tmp, "w") as f:
            yaml.safe_dump(user, f, default_flow_style=False, sort_keys=False)
        os.replace(tmp, self._user_path)
        return self.load()

    def _merged(self, user: dict[str, Any]) -> dict[str, Any]:
        merged = deep_merge(self._load_yaml(self._defaults_path), user)
        return deep_merge(merged, env_overrides(self._environ))

    def _read_user(self) -> dict[str, Any]:
        return self._load_yaml(self._user_path)

    def _mtime(self) -> float | None:
        try:
            return self._user_path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _notify(self, config: AppConfig) -> None:
        for listener in self._listeners:
            try:
                listener(config)
            except Exception:
                logger.exception("Config listener error")

    @staticmethod
    def _load_yaml(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with open(path) as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
