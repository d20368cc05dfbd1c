"""Config – 12-factor settings and loaders."""

from cachesync.config.settings import CacheSyncSettings, EnvSettingsLoader, Settings, SettingsLoader
from cachesync.config.validation import (
    InvalidSettingValueError,
    MissingRequiredSettingError,
    SettingsError,
)

__all__ = [
    "CacheSyncSettings",
    "EnvSettingsLoader",
    "InvalidSettingValueError",
    "MissingRequiredSettingError",
    "Settings",
    "SettingsError",
    "SettingsLoader",
]
