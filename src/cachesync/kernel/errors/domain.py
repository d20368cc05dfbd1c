"""Domain errors: malformed input and ordering rules of the cache model."""

from __future__ import annotations

from typing import Any

from cachesync.kernel.errors.base import BaseError


class DomainError(BaseError):
    """Raised when a rule of the cache model is violated."""

    default_code = "domain_error"


class ValidationError(DomainError):
    """Caller input does not meet validation rules (HTTP 400).

    ``errors`` is a list of field-level validation failures.
    """

    default_code = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        errors: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.errors: list[dict[str, Any]] = errors or []

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["errors"] = self.errors
        return base


class StaleEventError(DomainError):
    """A change event is older than the state it would overwrite.

    Expected under at-least-once delivery; callers discard the event.
    """

    default_code = "stale_event"

    def __init__(
        self,
        table: str,
        key: Any,
        commit_order: int,
        current: int | None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            f"Stale event for {table}[{key!r}]: commit_order={commit_order} <= {current}",
            **kwargs,
        )
        self.table = table
        self.key = key
        self.commit_order = commit_order
        self.current = current


__all__ = ["DomainError", "StaleEventError", "ValidationError"]
