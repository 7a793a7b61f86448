from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from chat_sync.domain.value_objects.ids import is_temp_id


def parse_ts(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True, slots=True)
class ConversationMessage:
    id: str
    chat_id: str
    sender_id: str
    original_text: str
    timestamp: datetime
    created_at: datetime
    original_language: str = "en"
    translations: dict[str, str] = field(default_factory=dict)
    reply_to: str | None = None
    edited_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_temporary(self) -> bool:
        return is_temp_id(self.id)

    @property
    def is_deleted(self) -> bool:
        """Soft-deleted messages are kept and rendered as tombstones."""
        return self.deleted_at is not None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ConversationMessage:
        created_at = parse_ts(row.get("created_at")) or parse_ts(row["timestamp"])
        return cls(
            id=str(row["id"]),
            chat_id=str(row["chat_id"]),
            sender_id=str(row["sender_id"]),
            original_text=row["original_text"],
            timestamp=parse_ts(row.get("timestamp")) or created_at,
            created_at=created_at,
            original_language=row.get("original_language") or "en",
            translations=dict(row.get("translations") or {}),
            reply_to=row.get("reply_to"),
            edited_at=parse_ts(row.get("edited_at")),
            deleted_at=parse_ts(row.get("deleted_at")),
        )
