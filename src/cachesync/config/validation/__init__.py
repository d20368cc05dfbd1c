"""Config validation errors."""
from cachesync.config.validation.errors import (
    InvalidSettingValueError,
    MissingRequiredSettingError,
    SettingsError,
)

__all__ = ["InvalidSettingValueError", "MissingRequiredSettingError", "SettingsError"]
