"""Configuration for gptbridge."""

from gptbridge.config.settings import Settings, load_settings
from gptbridge.config.store import BridgeConfig, ConfigStore

__all__ = ["BridgeConfig", "ConfigStore", "Settings", "load_settings"]
