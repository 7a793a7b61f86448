from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from chat_sync.domain.value_objects.enums import RowEventType


@dataclass(frozen=True, slots=True)
class RowFilter:
    """One row-change stream: table + event class, optionally scoped to ``column=value``."""

    table: str
    event: RowEventType = RowEventType.ALL
    column: str | None = None
    value: str | None = None

    def accepts(self, change: RowChange) -> bool:
        if change.table != self.table:
            return False
        if self.event != RowEventType.ALL and change.event_type != self.event:
            return False
        if self.column is None:
            return True
        row = change.new or change.old or {}
        return str(row.get(self.column)) == str(self.value)


@dataclass(frozen=True, slots=True)
class RowChange:
    table: str
    event_type: RowEventType
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
