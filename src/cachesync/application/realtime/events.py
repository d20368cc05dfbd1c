"""Application realtime – ChangeEvent value object."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from cachesync.kernel.errors import ValidationError

__all__ = ["ChangeEvent", "Operation", "matches_filter"]


class Operation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> "Operation":
        """Case-insensitive parse, so ``"INSERT"`` and ``Operation.INSERT`` both work."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.lower())
            except ValueError:
                pass
        raise ValidationError(
            f"Unknown change operation: {value!r}",
            errors=[{"field": "operation", "message": "must be insert, update or delete"}],
        )


def matches_filter(row: Mapping[str, Any] | None, filter: Mapping[str, Any] | None) -> bool:
    """Column-equality match; an empty filter matches every row."""
    if not filter:
        return True
    if row is None:
        return False
    return all(column in row and row[column] == value for column, value in filter.items())


def _first(payload: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in payload:
            return payload[name]
    return None


@dataclass(frozen=True)
class ChangeEvent:
    """One row change published by the database's change feed.

    ``commit_order`` increases monotonically per table; consumers use it to
    drop stale and duplicate deliveries.
    """

    table: str
    operation: Operation
    row: Mapping[str, Any] | None
    commit_order: int
    previous_row: Mapping[str, Any] | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "ChangeEvent":
        """Parse a feed message.

        Accepts ``operation``/``type``/``eventType``, ``row``/``record``/``new``,
        ``previous_row``/``previousRow``/``old_record``/``old`` and
        ``commit_order``/``commitOrder``. Raises :class:`ValidationError`.
        """
        if not isinstance(payload, Mapping):
            raise ValidationError("Change event must be an object")

        table = payload.get("table")
        if not isinstance(table, str) or not table:
            raise ValidationError(
                "Change event has no table",
                errors=[{"field": "table", "message": "must be a non-empty string"}],
            )

        operation = Operation.parse(_first(payload, "operation", "type", "eventType"))
        row = _first(payload, "row", "record", "new")
        previous_row = _first(payload, "previous_row", "previousRow", "old_record", "old")
        for name, value in (("row", row), ("previous_row", previous_row)):
            if value is not None and not isinstance(value, Mapping):
                raise ValidationError(
                    f"Change event {name} must be an object",
                    errors=[{"field": name, "message": "must be an object"}],
                )
        # feeds send {} for the missing side of a delete/insert
        row = row or None
        previous_row = previous_row or None
        if operation is Operation.DELETE:
            if row is None and previous_row is None:
                raise ValidationError("Delete event carries no row")
        elif row is None:
            raise ValidationError(f"{operation.value} event carries no row")

        commit_order = _first(payload, "commit_order", "commitOrder")
        if isinstance(commit_order, bool) or not isinstance(commit_order, int) or commit_order < 0:
            raise ValidationError(
                "Change event commit_order must be a non-negative integer",
                errors=[{"field": "commit_order", "message": "must be a non-negative integer"}],
            )

        return cls(
            table=table,
            operation=operation,
            row=dict(row) if row is not None else None,
            commit_order=commit_order,
            previous_row=dict(previous_row) if previous_row is not None else None,
        )

    @property
    def subject(self) -> Mapping[str, Any]:
        """The row that identifies the changed key (``previous_row`` for deletes)."""
        if self.operation is Operation.DELETE:
            return self.previous_row or self.row or {}
        return self.row or {}

    def key(self, key_field: str = "id") -> Any:
        subject = self.subject
        if key_field not in subject:
            raise ValidationError(
                f"Change event for {self.table} has no {key_field!r} column",
                errors=[{"field": key_field, "message": "missing key column"}],
            )
        return subject[key_field]

    def matches(self, filter: Mapping[str, Any] | None) -> bool:
        """True if the row before or after the change falls under *filter*."""
        return matches_filter(self.row, filter) or matches_filter(self.previous_row, filter)
