"""Config settings – SettingsLoader port and EnvSettingsLoader."""
from __future__ import annotations

import abc
import dataclasses
import os
from collections.abc import Mapping
from typing import Any, TypeVar

from cachesync.config.settings.base import Settings
from cachesync.config.validation import (
    InvalidSettingValueError,
    MissingRequiredSettingError,
    SettingsError,
)
from cachesync.observability.logging import get_logger

T = TypeVar("T", bound=Settings)
logger = get_logger(__name__)

_TRUTHY = ("1", "true", "yes", "on")


class SettingsLoader(abc.ABC):
    """Port: load settings from an external source."""

    @abc.abstractmethod
    def load(self, settings_class: type[T]) -> T: ...


class EnvSettingsLoader(SettingsLoader):
    """Load settings from environment variables named ``<PREFIX>_<FIELD>``.

    *environ* defaults to ``os.environ``; tests pass a plain dict.
    """

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ

    def load(self, settings_class: type[T]) -> T:
        environ = self._environ if self._environ is not None else os.environ
        kwargs: dict[str, Any] = {}

        for field in dataclasses.fields(settings_class):  # type: ignore[arg-type]
            env_key = settings_class.env_name(field.name)
            raw = environ.get(env_key)

            if raw is None:
                if (
                    field.default is dataclasses.MISSING
                    and field.default_factory is dataclasses.MISSING  # type: ignore[misc]
                ):
                    raise MissingRequiredSettingError(env_key)
                continue

            try:
                kwargs[field.name] = self._coerce(raw, field.type)
            except ValueError as exc:
                raise InvalidSettingValueError(env_key, raw, str(exc)) from exc

        try:
            settings = settings_class(**kwargs)
        except SettingsError:
            raise
        except Exception as exc:
            raise SettingsError(f"Failed to load settings: {exc}") from exc
        logger.info("settings_loaded", settings=settings_class.__name__, **settings.describe())
        return settings

    def _coerce(self, value: str, type_hint: Any) -> Any:  # noqa: PLR0911
        # ``from __future__ import annotations`` leaves hints as strings.
        hint = type_hint if isinstance(type_hint, str) else getattr(type_hint, "__name__", str(type_hint))
        optional = "None" in hint
        base = hint.replace("| None", "").replace("None |", "").strip()
        if optional and value.strip() == "":
            return None
        if base == "bool":
            return value.strip().lower() in _TRUTHY
        if base == "int":
            return int(value)
        if base == "float":
            return float(value)
        if base.startswith(("list", "tuple")):
            items = [v.strip() for v in value.split(",") if v.strip()]
            return tuple(items) if base.startswith("tuple") else items
        return value


__all__ = ["EnvSettingsLoader", "SettingsLoader"]
