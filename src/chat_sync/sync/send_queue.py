"""Durable FIFO of unacknowledged outbound messages."""
from __future__ import annotations

import logging

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from chat_sync.application.ports.storage import QueueStorage
from chat_sync.config import settings
from chat_sync.domain.entities.queued_send import QueuedSend

logger = logging.getLogger(__name__)

_QUEUE_ADAPTER = TypeAdapter(list[QueuedSend])


class DurableSendQueue:
    """Queue of ``QueuedSend`` keyed by temp id.

    Every mutating call flushes the whole queue to storage before returning,
    so a crash between enqueue and acknowledgement loses nothing.
    """

    def __init__(self, storage: QueueStorage, key: str | None = None) -> None:
        self._storage = storage
        self._key = key or settings.SEND_QUEUE_KEY
        self._items: dict[str, QueuedSend] = {}

    async def load(self) -> list[QueuedSend]:
        raw = await self._storage.read(self._key)
        if not raw:
            self._items = {}
            return []
        try:
            items = _QUEUE_ADAPTER.validate_json(raw)
        except (PydanticValidationError, ValueError):
            logger.exception("Stored send queue under %s is unreadable, discarding", self._key)
            self._items = {}
            return []
        self._items = {item.temp_id: item for item in items}
        if self._items:
            logger.info("Reloaded %d queued sends", len(self._items))
        return self.dequeue_all()

    async def enqueue(self, item: QueuedSend) -> None:
        self._items[item.temp_id] = item
        await self._flush()

    def dequeue_all(self) -> list[QueuedSend]:
        """All items, oldest enqueue first. Does not remove anything."""
        return sorted(self._items.values(), key=lambda item: item.timestamp)

    async def remove(self, temp_id: str) -> QueuedSend | None:
        item = self._items.pop(temp_id, None)
        if item is not None:
            await self._flush()
        return item

    async def record_failure(self, temp_id: str) -> int:
        """Increment the retry counter; returns the new count (0 if unknown)."""
        item = self._items.get(temp_id)
        if item is None:
            return 0
        item.retries += 1
        await self._flush()
        return item.retries

    async def clear(self) -> None:
        self._items.clear()
        await self._flush()

    def get(self, temp_id: str) -> QueuedSend | None:
        return self._items.get(temp_id)

    def __contains__(self, temp_id: object) -> bool:
        return temp_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    async def _flush(self) -> None:
        raw = _QUEUE_ADAPTER.dump_json(self.dequeue_all(), by_alias=True).decode()
        await self._storage.write(self._key, raw)
