from __future__ import annotations

from enum import StrEnum


class ConnectionState(StrEnum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    ERROR = "error"
    CLOSED = "closed"


class ChannelStatus(StrEnum):
    """Statuses a backend channel reports to its subscriber."""

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class RowEventType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "*"


class UserStatus(StrEnum):
    AVAILABLE = "available"
    BUSY = "busy"
    DO_NOT_DISTURB = "do-not-disturb"
    INVISIBLE = "invisible"


class NotificationType(StrEnum):
    MESSAGE = "message"
    MENTION = "mention"
    REACTION = "reaction"
    SYSTEM = "system"
    CHAT_INVITE = "chat_invite"
