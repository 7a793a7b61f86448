from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from chat_sync.domain.entities.message import parse_ts


def now_ms() -> int:
    return int(time.time() * 1000)


class QueuedSend(BaseModel):
    """Outbound message waiting for a confirmed insert.

    Stored as ``{tempId, payload, retries, timestamp}``; keys written by newer
    client versions are ignored on load.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    temp_id: str = Field(alias="tempId")
    payload: dict[str, Any]
    retries: int = 0
    timestamp: int = Field(default_factory=now_ms)

    def matches_row(self, row: dict[str, Any]) -> bool:
        """True if ``row`` is the backend's echo of this payload."""
        p = self.payload
        if str(row.get("chat_id")) != str(p.get("chat_id")):
            return False
        if str(row.get("sender_id")) != str(p.get("sender_id")):
            return False
        if row.get("original_text") != p.get("original_text"):
            return False
        try:
            return parse_ts(row.get("timestamp")) == parse_ts(p.get("timestamp"))
        except ValueError:
            return False
