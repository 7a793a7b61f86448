"""Shared test fixtures."""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from chat_sync.application.dto.events import RowChange, RowFilter
from chat_sync.application.dto.handlers import MessageHandlers
from chat_sync.application.exceptions import UNIQUE_VIOLATION, BackendError
from chat_sync.application.ports.backend import OnRowChangeCallback, OnStatusCallback
from chat_sync.domain.value_objects.enums import ChannelStatus
from chat_sync.sync.event_log import EventLog
from chat_sync.sync.network import NetworkMonitor

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
CHAT_ID = "chat-1"
OTHER_CHAT_ID = "chat-2"

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)


@dataclass
class FakeQueueStorage:
    data: dict[str, str] = field(default_factory=dict)
    writes: int = 0

    async def read(self, key: str) -> str | None:
        return self.data.get(key)

    async def write(self, key: str, raw: str) -> None:
        self.data[key] = raw
        self.writes += 1


class FakeChannel:
    """Row-change channel; reports whatever status the backend has queued up."""

    def __init__(
        self,
        backend: FakeRealtimeBackend,
        name: str,
        filters: list[RowFilter] | None = None,
        on_change: OnRowChangeCallback | None = None,
    ) -> None:
        self.backend = backend
        self.name = name
        self.filters = filters or []
        self.on_change = on_change
        self.on_status: OnStatusCallback | None = None
        self.subscribed = False
        self.unsubscribed = False
        self.fail_unsubscribe = False

    @property
    def live(self) -> bool:
        return self.subscribed and not self.unsubscribed

    async def subscribe(self, on_status: OnStatusCallback) -> None:
        self.on_status = on_status
        if self.backend.hold_subscribe is not None:
            await self.backend.hold_subscribe.wait()
        self.subscribed = True
        status = self.backend.next_status()
        if status is not None:
            on_status(status, None if status == ChannelStatus.SUBSCRIBED else "backend said no")

    async def unsubscribe(self) -> None:
        self.unsubscribed = True
        if self.fail_unsubscribe:
            raise RuntimeError("socket already gone")

    def emit_status(self, status: ChannelStatus, detail: str | None = None) -> None:
        assert self.on_status is not None
        self.on_status(status, detail)

    async def push(self, change: RowChange) -> None:
        if self.on_change is not None and any(f.accepts(change) for f in self.filters):
            await self.on_change(change)


class FakePresenceChannel(FakeChannel):
    def __init__(self, backend: FakeRealtimeBackend, key: str, member_key: str) -> None:
        super().__init__(backend, f"presence:{key}")
        self.key = key
        self.member_key = member_key
        self.tracked: list[dict[str, Any]] = []
        self.untracked = False

    async def track(self, record: dict[str, Any]) -> None:
        if self.backend.fail_track:
            raise RuntimeError("track rejected")
        self.tracked.append(record)
        self.backend.presence.setdefault(self.key, {})[self.member_key] = [record]

    async def untrack(self) -> None:
        self.untracked = True
        self.backend.presence.get(self.key, {}).pop(self.member_key, None)

    def presence_state(self) -> dict[str, list[dict[str, Any]]]:
        return {k: list(v) for k, v in self.backend.presence.get(self.key, {}).items()}


class FakeRealtimeBackend:
    def __init__(self) -> None:
        self.channels: list[FakeChannel] = []
        self.statuses: list[ChannelStatus | None] = []
        self.default_status: ChannelStatus | None = ChannelStatus.SUBSCRIBED
        self.presence: dict[str, dict[str, list[dict[str, Any]]]] = {}
        self.fail_track = False
        self.hold_subscribe: asyncio.Event | None = None

    def next_status(self) -> ChannelStatus | None:
        if self.statuses:
            return self.statuses.pop(0)
        return self.default_status

    def open_row_changes(
        self,
        name: str,
        filters: list[RowFilter],
        on_change: OnRowChangeCallback,
    ) -> FakeChannel:
        channel = FakeChannel(self, name, filters, on_change)
        self.channels.append(channel)
        return channel

    def open_presence(self, key: str, member_key: str) -> FakePresenceChannel:
        channel = FakePresenceChannel(self, key, member_key)
        self.channels.append(channel)
        return channel

    @property
    def latest(self) -> FakeChannel:
        return self.channels[-1]

    def live_channels(self, prefix: str = "") -> list[FakeChannel]:
        return [c for c in self.channels if c.live and c.name.startswith(prefix)]

    async def push(self, change: RowChange) -> None:
        for channel in self.live_channels():
            await channel.push(change)


class FakeRowStore:
    """In-memory tables with the uniqueness rules the real backend enforces."""

    _UNIQUE = {
        "message_reactions": ("message_id", "user_id", "emoji"),
        "read_receipts": ("message_id", "user_id"),
    }

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.fail_inserts: dict[str, int] = {}
        self.hold_inserts: asyncio.Event | None = None
        self.calls: list[tuple[str, str]] = []
        self.rpc_calls: list[tuple[str, dict[str, Any]]] = []
        self.rpc_results: dict[str, Any] = {}
        self.rpc_errors: set[str] = set()
        self._ids = itertools.count(1)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def seed(self, table: str, **values: Any) -> dict[str, Any]:
        row = dict(values)
        row.setdefault("id", f"{table}-{next(self._ids)}")
        self.rows(table).append(row)
        return dict(row)

    async def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("insert", table))
        if self.fail_inserts.get(table, 0) > 0:
            self.fail_inserts[table] -= 1
            raise BackendError("network request failed")
        unique = self._UNIQUE.get(table)
        if unique and any(all(r.get(c) == values.get(c) for c in unique) for r in self.rows(table)):
            raise BackendError("duplicate key value", code=UNIQUE_VIOLATION)
        row = {"id": f"{table}-{next(self._ids)}", **values}
        if table == "messages":
            row.setdefault("created_at", values.get("timestamp"))
        self.rows(table).append(row)
        if self.hold_inserts is not None:
            await self.hold_inserts.wait()
        return dict(row)

    async def update(
        self, table: str, values: dict[str, Any], *, match: dict[str, Any],
    ) -> list[dict[str, Any]]:
        self.calls.append(("update", table))
        updated = []
        for row in self.rows(table):
            if all(row.get(k) == v for k, v in match.items()):
                row.update(values)
                updated.append(dict(row))
        return updated

    async def delete(self, table: str, *, match: dict[str, Any]) -> list[dict[str, Any]]:
        self.calls.append(("delete", table))
        kept, removed = [], []
        for row in self.rows(table):
            (removed if all(row.get(k) == v for k, v in match.items()) else kept).append(row)
        self.tables[table] = kept
        return removed

    async def select(
        self,
        table: str,
        *,
        match: dict[str, Any] | None = None,
        in_: tuple[str, list[Any]] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self.calls.append(("select", table))
        rows = [
            dict(r) for r in self.rows(table)
            if all(r.get(k) == v for k, v in (match or {}).items())
            and (in_ is None or r.get(in_[0]) in in_[1])
        ]
        if order_by:
            rows.sort(key=lambda r: str(r.get(order_by)), reverse=descending)
        rows = rows[offset:]
        return rows[:limit] if limit is not None else rows

    async def rpc(self, fn: str, params: dict[str, Any]) -> Any:
        self.rpc_calls.append((fn, params))
        if fn in self.rpc_errors:
            raise BackendError(f"{fn} failed")
        return self.rpc_results.get(fn)

    def count(self, op: str, table: str) -> int:
        return sum(1 for c in self.calls if c == (op, table))


@dataclass
class Recorder:
    """Collects handler callbacks as ``(kind, *args)`` tuples."""

    events: list[tuple[Any, ...]] = field(default_factory=list)

    def handlers(self) -> MessageHandlers:
        return MessageHandlers(
            on_new_message=lambda m: self.events.append(("new", m.id)),
            on_message_updated=lambda m, replaced: self.events.append(("updated", m.id, replaced)),
            on_message_deleted=lambda mid: self.events.append(("deleted", mid)),
            on_reaction_added=lambda r: self.events.append(("reaction_added", r.message_id, r.emoji)),
            on_reaction_removed=lambda r: self.events.append(("reaction_removed", r.message_id, r.emoji)),
            on_read_receipt=lambda r: self.events.append(("receipt", r.message_id, r.user_id)),
            on_connection_change=lambda c: self.events.append(("connection", c)),
        )

    def of(self, kind: str) -> list[tuple[Any, ...]]:
        return [e for e in self.events if e[0] == kind]


def message_row(
    message_id: str,
    *,
    chat_id: str = CHAT_ID,
    sender_id: str = OTHER_USER_ID,
    text: str = "hello",
    at: datetime = T0,
    **extra: Any,
) -> dict[str, Any]:
    return {
        "id": message_id,
        "chat_id": chat_id,
        "sender_id": sender_id,
        "original_text": text,
        "original_language": "en",
        "translations": {},
        "reply_to": None,
        "timestamp": at.isoformat(),
        "created_at": at.isoformat(),
        "edited_at": None,
        "deleted_at": None,
        **extra,
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> FakeRealtimeBackend:
    return FakeRealtimeBackend()


@pytest.fixture
def store() -> FakeRowStore:
    return FakeRowStore()


@pytest.fixture
def storage() -> FakeQueueStorage:
    return FakeQueueStorage()


@pytest.fixture
def network() -> NetworkMonitor:
    return NetworkMonitor()


@pytest.fixture
def event_log() -> EventLog:
    return EventLog(capacity=200)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()
