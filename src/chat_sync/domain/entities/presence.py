from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from chat_sync.domain.value_objects.enums import UserStatus


class PresenceProfile(BaseModel):
    """What a user announces about themselves, minus the heartbeat stamp."""

    model_config = ConfigDict(extra="ignore")

    id: str
    username: str
    avatar_url: str | None = None
    status: UserStatus = UserStatus.AVAILABLE
    last_seen: datetime | None = None


class PresenceRecord(PresenceProfile):
    online_at: datetime
