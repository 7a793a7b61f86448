from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from uuid import UUID

from chat_sync.application.dto.events import RowChange
from chat_sync.domain.value_objects.enums import RowEventType


class _Encoder(json.JSONEncoder):
    def default(self, o: object) -> Any:
        if isinstance(o, UUID):
            return str(o)
        if isinstance(o, datetime):
            return o.isoformat()
        return super().default(o)


def dumps(value: Any) -> str:
    return json.dumps(value, cls=_Encoder)


def serialize_row_change(change: RowChange) -> str:
    envelope = {"event": str(change.event_type), "data": {"new": change.new, "old": change.old}}
    return dumps(envelope)


def deserialize_row_change(table: str, raw: str | bytes) -> RowChange:
    data = json.loads(raw)
    payload = data.get("data") or {}
    return RowChange(
        table=table,
        event_type=RowEventType(data["event"]),
        new=payload.get("new"),
        old=payload.get("old"),
    )
