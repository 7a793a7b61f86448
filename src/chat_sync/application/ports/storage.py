from __future__ import annotations

from typing import Protocol


class QueueStorage(Protocol):
    """Durable key/value slot the send queue flushes into."""

    async def read(self, key: str) -> str | None: ...

    async def write(self, key: str, raw: str) -> None: ...
