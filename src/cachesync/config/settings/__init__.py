"""Config settings – 12-factor env-based configuration."""
from cachesync.config.settings.base import Settings
from cachesync.config.settings.cachesync import CacheSyncSettings
from cachesync.config.settings.loaders import EnvSettingsLoader, SettingsLoader

__all__ = ["CacheSyncSettings", "EnvSettingsLoader", "Settings", "SettingsLoader"]
