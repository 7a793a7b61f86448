from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from chat_sync.domain.entities.message import parse_ts


@dataclass(frozen=True, slots=True)
class ReadReceipt:
    id: str
    message_id: str
    user_id: str
    read_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ReadReceipt:
        return cls(
            id=str(row["id"]),
            message_id=str(row["message_id"]),
            user_id=str(row["user_id"]),
            read_at=parse_ts(row.get("read_at")),
        )
