from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from chat_sync.domain.value_objects.enums import NotificationType


class Notification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    title: str
    body: str
    type: NotificationType
    data: dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    clicked: bool = False
    created_at: datetime | None = None
    expires_at: datetime | None = None
