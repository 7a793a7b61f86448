"""Time source for timestamps, presence staleness and queue ordering."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Backend timestamps without an offset are UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)
