"""Structured log of channel lifecycle events.

Connection state machines write here unconditionally; debug surfaces read
the buffered tail or subscribe for live events.
"""
from __future__ import annotations

import itertools
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Callable

from pydantic import BaseModel

from chat_sync.config import settings
from chat_sync.domain.value_objects.enums import ConnectionState

logger = logging.getLogger(__name__)


class ChannelEvent(BaseModel):
    seq: int
    at: datetime
    channel: str
    kind: str  # transition | retry_scheduled | retry_deferred | error | status | cleanup_failed
    old_state: ConnectionState | None = None
    new_state: ConnectionState | None = None
    detail: str | None = None


EventSubscriber = Callable[[ChannelEvent], None]


class EventLog:
    def __init__(self, capacity: int | None = None) -> None:
        self._events: deque[ChannelEvent] = deque(maxlen=capacity or settings.EVENT_LOG_CAPACITY)
        self._subscribers: list[EventSubscriber] = []
        self._seq = itertools.count(1)

    def record(
        self,
        channel: str,
        kind: str,
        *,
        old_state: ConnectionState | None = None,
        new_state: ConnectionState | None = None,
        detail: str | None = None,
    ) -> ChannelEvent:
        event = ChannelEvent(
            seq=next(self._seq),
            at=datetime.now(timezone.utc),
            channel=channel,
            kind=kind,
            old_state=old_state,
            new_state=new_state,
            detail=detail,
        )
        self._events.append(event)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("Event log subscriber failed")
        return event

    def subscribe(self, subscriber: EventSubscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    def tail(self, limit: int | None = None, *, channel: str | None = None) -> list[ChannelEvent]:
        events = [e for e in self._events if channel is None or e.channel == channel]
        return events[-limit:] if limit else events

    def __len__(self) -> int:
        return len(self._events)
