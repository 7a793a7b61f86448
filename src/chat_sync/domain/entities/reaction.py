from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from chat_sync.domain.entities.message import parse_ts


@dataclass(frozen=True, slots=True)
class Reaction:
    id: str
    message_id: str
    user_id: str
    emoji: str
    created_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        """Uniqueness key enforced by the backend."""
        return (self.message_id, self.user_id, self.emoji)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Reaction:
        return cls(
            id=str(row["id"]),
            message_id=str(row["message_id"]),
            user_id=str(row["user_id"]),
            emoji=row["emoji"],
            created_at=parse_ts(row.get("created_at")),
        )
