"""Config settings – Settings base class."""
from __future__ import annotations

import dataclasses
from typing import Any, ClassVar


@dataclasses.dataclass
class Settings:
    """Base class for settings read from ``<PREFIX>_<FIELD>`` variables.

    Subclasses set ``_prefix``, list credential fields in ``_secret_fields``
    and put cross-field checks in :meth:`_validate`, which runs on every
    construction, so an invalid instance never exists.
    """

    _prefix: ClassVar[str] = ""
    _secret_fields: ClassVar[frozenset[str]] = frozenset()

    def __post_init__(self) -> None:
        self._validate()

    def _validate(self) -> None:
        """Override to add cross-field validation."""

    @classmethod
    def env_name(cls, field_name: str) -> str:
        return f"{cls._prefix}_{field_name}".upper().lstrip("_")

    def describe(self) -> dict[str, Any]:
        """Field values with secrets reduced to whether they are set."""
        out: dict[str, Any] = {}
        for field in dataclasses.fields(self):
            value = getattr(self, field.name)
            if field.name in self._secret_fields:
                value = "***" if value else None
            out[field.name] = value
        return out


__all__ = ["Settings"]
