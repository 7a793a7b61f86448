"""Primitives the sync core consumes from the backend collaborator."""
from __future__ import annotations

from typing import Any, Callable, Coroutine, Protocol

from chat_sync.application.dto.events import RowChange, RowFilter
from chat_sync.domain.value_objects.enums import ChannelStatus

OnStatusCallback = Callable[[ChannelStatus, str | None], None]
OnRowChangeCallback = Callable[[RowChange], Coroutine[Any, Any, None]]


class RealtimeChannel(Protocol):
    async def subscribe(self, on_status: OnStatusCallback) -> None:
        """Start subscribing; ``on_status`` receives every status transition."""
        ...

    async def unsubscribe(self) -> None: ...


class RowChangeChannel(RealtimeChannel, Protocol):
    pass


class PresenceChannel(RealtimeChannel, Protocol):
    async def track(self, record: dict[str, Any]) -> None: ...

    async def untrack(self) -> None: ...

    def presence_state(self) -> dict[str, list[dict[str, Any]]]: ...


class RealtimeBackend(Protocol):
    def open_row_changes(
        self,
        name: str,
        filters: list[RowFilter],
        on_change: OnRowChangeCallback,
    ) -> RowChangeChannel: ...

    def open_presence(self, key: str, member_key: str) -> PresenceChannel: ...


class RowStore(Protocol):
    """Request/response calls. Failures raise ``BackendError``."""

    async def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]: ...

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        *,
        match: dict[str, Any],
    ) -> list[dict[str, Any]]: ...

    async def delete(self, table: str, *, match: dict[str, Any]) -> list[dict[str, Any]]: ...

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
    ) -> list[dict[str, Any]]: ...

    async def rpc(self, fn: str, params: dict[str, Any]) -> Any: ...
