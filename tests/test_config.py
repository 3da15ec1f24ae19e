"""Tests for configuration loading and validation."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from power_guard.config.manager import ConfigManager, deep_merge, env_overrides
from power_guard.config.schema import (
    AppConfig,
    GuardConfig,
    MitigationAction,
    PriorityEntry,
    Profile,
)


class TestAppConfig:
    def test_default_config_is_valid(self) -> None:
        config = AppConfig()
        assert config.guard.enabled is True
        assert config.guard.profile == Profile.NORMAL
        assert config.guard.power_limit_w == 10000
        assert config.guard.smoothing_window == 5
        assert config.guard.hysteresis_count == 3
        assert config.guard.cooldown_seconds == 30
        assert config.guard.priority_list == []

    def test_meter_and_persistence_defaults(self) -> None:
        config = AppConfig()
        assert config.meter.poll_interval_seconds == 10
        assert config.meter.event_grace_seconds == 8
        assert config.meter.stale_after_seconds == 30
        assert config.meter.reconnect_after_seconds == 60
        assert config.persistence.save_retry_interval_seconds == 3
        assert config.persistence.max_save_retries == 5

    def test_custom_values(self) -> None:
        config = AppConfig(
            guard={"power_limit_w": 8000, "hysteresis_count": 2},
            mqtt={"enabled": True, "topic_prefix": "house"},
        )
        assert config.guard.power_limit_w == 8000
        assert config.guard.hysteresis_count == 2
        assert config.mqtt.topic_prefix == "house"


class TestGuardConfig:
    @pytest.mark.parametrize(
        ("profile", "expected"),
        [("normal", 10000), ("strict", 9000), ("solar", 10500)],
    )
    def test_effective_limit_per_profile(self, profile: str, expected: float) -> None:
        guard = GuardConfig(power_limit_w=10000, profile=profile)
        assert guard.effective_limit_w == pytest.approx(expected)

    def test_unknown_profile_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GuardConfig(profile="eco")

    def test_duplicate_device_ids_rejected(self) -> None:
        with pytest.raises(ValidationError, match="duplicate device_id"):
            GuardConfig(priority_list=[{"device_id": "a"}, {"device_id": "a"}])

    def test_spike_multiplier_must_exceed_one(self) -> None:
        with pytest.raises(ValidationError):
            GuardConfig(spike_multiplier=1.0)

    def test_sorted_priority_list_is_stable(self) -> None:
        guard = GuardConfig(priority_list=[
            {"device_id": "c", "priority": 2},
            {"device_id": "a", "priority": 1},
            {"device_id": "b", "priority": 1},
        ])
        assert [e.device_id for e in guard.sorted_priority_list()] == ["a", "b", "c"]

    def test_charger_entries(self) -> None:
        guard = GuardConfig(priority_list=[
            {"device_id": "heater", "action": "turn_off"},
            {"device_id": "ev", "action": "dynamic_current"},
            {"device_id": "ev2", "action": "dynamic_current", "enabled": False},
        ])
        assert [e.device_id for e in guard.charger_entries()] == ["ev"]

    def test_find_entry(self) -> None:
        guard = GuardConfig(priority_list=[{"device_id": "heater", "name": "Heater"}])
        assert guard.find_entry("heater").display_name == "Heater"
        assert guard.find_entry("missing") is None


class TestPriorityEntry:
    def test_legacy_action_names(self) -> None:
        assert PriorityEntry(device_id="a", action="onoff").action == MitigationAction.TURN_OFF
        assert PriorityEntry(device_id="b", action="hoiax_power").action == MitigationAction.STEPPED_POWER

    def test_display_name_falls_back_to_id(self) -> None:
        assert PriorityEntry(device_id="heater").display_name == "heater"

    def test_charger_phases_restricted(self) -> None:
        with pytest.raises(ValidationError):
            PriorityEntry(device_id="ev", charger_phases=2)


class TestConfigManager:
    def test_load_defaults_only(self, tmp_path: Path) -> None:
        defaults_file = tmp_path / "defaults.yaml"
        defaults_file.write_text("guard:\n  power_limit_w: 12000\ndb:\n  path: test.db\n")
        mgr = ConfigManager(defaults_path=defaults_file, user_path=tmp_path / "user.yaml")
        config = mgr.load()
        assert config.guard.power_limit_w == 12000
        assert config.db.path == "test.db"

    def test_user_overrides(self, tmp_path: Path) -> None:
        defaults_file = tmp_path / "defaults.yaml"
        defaults_file.write_text("guard:\n  power_limit_w: 10000\n  cooldown_seconds: 30\n")
        user_file = tmp_path / "user.yaml"
        user_file.write_text("guard:\n  power_limit_w: 8000\n")
        mgr = ConfigManager(defaults_path=defaults_file, user_path=user_file)
        config = mgr.load()
        assert config.guard.power_limit_w == 8000
        assert config.guard.cooldown_seconds == 30

    def test_deep_merge(self) -> None:
        base = {"a": {"b": 1, "c": 2}, "d": 3, "l": [1, 2]}
        override = {"a": {"b": 10}, "e": 5, "l": [3]}
        result = deep_merge(base, override)
        assert result == {"a": {"b": 10, "c": 2}, "d": 3, "e": 5, "l": [3]}
        assert base["a"]["b"] == 1

    def test_config_before_load_raises(self, tmp_path: Path) -> None:
        mgr = ConfigManager(defaults_path=tmp_path / "d.yaml", user_path=tmp_path / "u.yaml")
        with pytest.raises(RuntimeError):
            _ = mgr.config

    def test_to_json(self, config_manager: ConfigManager) -> None:
        assert '"power_limit_w"' in config_manager.to_json()

    def test_save_user_config_writes_and_reloads(self, config_manager: ConfigManager, tmp_path: Path) -> None:
        config = config_manager.save_user_config({"guard": {"power_limit_w": 7000}})
        assert config.guard.power_limit_w == 7000
        assert config_manager.config.guard.power_limit_w == 7000
        assert "power_limit_w: 7000" in (tmp_path / "config.yaml").read_text()

    def test_invalid_update_leaves_file_untouched(self, config_manager: ConfigManager, tmp_path: Path) -> None:
        with pytest.raises(ValidationError):
            config_manager.save_user_config({"guard": {"power_limit_w": -5}})
        assert not (tmp_path / "config.yaml").exists()
        assert config_manager.config.guard.power_limit_w == 10000

    def test_listeners_notified_on_reload_only(self, tmp_path: Path) -> None:
        defaults_file = tmp_path / "defaults.yaml"
        defaults_file.write_text("guard:\n  power_limit_w: 10000\n")
        mgr = ConfigManager(defaults_path=defaults_file, user_path=tmp_path / "user.yaml")
        seen: list[AppConfig] = []
        mgr.add_listener(seen.append)

        mgr.load()
        assert seen == []

        mgr.save_user_config({"guard": {"profile": "strict"}})
        assert len(seen) == 1
        assert seen[0].guard.profile == Profile.STRICT

    def test_failing_listener_does_not_block_others(self, config_manager: ConfigManager) -> None:
        seen: list[AppConfig] = []

        def broken(_config: AppConfig) -> None:
            raise RuntimeError("boom")

        config_manager.add_listener(broken)
        config_manager.add_listener(seen.append)
        config_manager.load()
        assert len(seen) == 1

    def test_shipped_defaults_file_is_valid(self) -> None:
        defaults = Path(__file__).resolve().parent.parent / "config.defaults.yaml"
        mgr = ConfigManager(defaults_path=defaults, user_path=defaults.parent / "does-not-exist.yaml")
        config = mgr.load()
        assert config.guard.power_limit_w == 10000
        assert config.registry.adapter == "memory"

    def test_save_leaves_no_temp_file(self, config_manager: ConfigManager, tmp_path: Path) -> None:
        config_manager.save_user_config({"guard": {"hysteresis_count": 4}})
        assert not (tmp_path / "config.yaml.tmp").exists()


class TestEnvironmentOverrides:
    def test_parses_nested_typed_values(self) -> None:
        overrides = env_overrides({
            "POWER_GUARD__GUARD__POWER_LIMIT_W": "9000",
            "POWER_GUARD__MQTT__ENABLED": "true",
            "POWER_GUARD__REGISTRY__BASE_URL": "http://hub.local/api",
            "HOME": "/root",
        })
        assert overrides == {
            "guard": {"power_limit_w": 9000},
            "mqtt": {"enabled": True},
            "registry": {"base_url": "http://hub.local/api"},
        }

    def test_environment_wins_over_files(self, tmp_path: Path) -> None:
        defaults_file = tmp_path / "defaults.yaml"
        defaults_file.write_text("guard:\n  power_limit_w: 10000\n")
        user_file = tmp_path / "user.yaml"
        user_file.write_text("guard:\n  power_limit_w: 8000\n")
        mgr = ConfigManager(
            defaults_path=defaults_file,
            user_path=user_file,
            environ={"POWER_GUARD__GUARD__PROFILE": "strict", "POWER_GUARD__GUARD__POWER_LIMIT_W": "7500"},
        )

        config = mgr.load()

        assert config.guard.power_limit_w == 7500
        assert config.guard.profile == Profile.STRICT

    def test_environment_not_written_to_user_file(self, tmp_path: Path) -> None:
        mgr = ConfigManager(
            defaults_path=tmp_path / "defaults.yaml",
            user_path=tmp_path / "user.yaml",
            environ={"POWER_GUARD__API__PORT": "9090"},
        )
        mgr.load()

        mgr.save_user_config({"guard": {"power_limit_w": 6000}})

        assert "port" not in (tmp_path / "user.yaml").read_text()
        assert mgr.config.api.port == 9090


class TestReloadIfChanged:
    def _make_manager(self, tmp_path: Path) -> ConfigManager:
        user_file = tmp_path / "user.yaml"
        user_file.write_text("guard:\n  power_limit_w: 8000\n")
        mgr = ConfigManager(defaults_path=tmp_path / "defaults.yaml", user_path=user_file, environ={})
        mgr.load()
        return mgr

    def _edit(self, path: Path, text: str) -> None:
        stat = path.stat()
        path.write_text(text)
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))

    def test_unchanged_file_not_reloaded(self, tmp_path: Path) -> None:
        mgr = self._make_manager(tmp_path)
        assert mgr.reload_if_changed() is False

    def test_edit_reloads_and_notifies(self, tmp_path: Path) -> None:
        mgr = self._make_manager(tmp_path)
        seen: list[AppConfig] = []
        mgr.add_listener(seen.append)

        self._edit(mgr.user_path, "guard:\n  power_limit_w: 7000\n")

        assert mgr.reload_if_changed() is True
        assert mgr.config.guard.power_limit_w == 7000
        assert [c.guard.power_limit_w for c in seen] == [7000]
        assert mgr.reload_if_changed() is False

    def test_invalid_edit_keeps_active_config(self, tmp_path: Path) -> None:
        mgr = self._make_manager(tmp_path)

        self._edit(mgr.user_path, "guard:\n  power_limit_w: -1\n")

        assert mgr.reload_if_changed() is False
        assert mgr.config.guard.power_limit_w == 8000
        assert mgr.reload_if_changed() is False
