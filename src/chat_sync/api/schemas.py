"""Debug surface payload models."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from chat_sync.domain.value_objects.enums import ConnectionState
from chat_sync.sync.event_log import ChannelEvent


class WsInbound(BaseModel):
    """Client → Server."""

    type: str  # ping
    data: dict[str, Any] = {}


class WsOutbound(BaseModel):
    """Server → Client."""

    type: str  # snapshot | event | pong | error
    data: dict[str, Any] = {}


class ChannelSnapshot(BaseModel):
    name: str
    state: ConnectionState
    retry_pending: bool = False
    deferred: bool = False


class EventsResponse(BaseModel):
    items: list[ChannelEvent]
