"""Configuration management for Power Guard."""

from power_guard.config.schema import AppConfig
from power_guard.config.manager import ConfigManager

__all__ = ["AppConfig", "ConfigManager"]
