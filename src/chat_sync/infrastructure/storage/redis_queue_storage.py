from __future__ import annotations

import redis.asyncio as aioredis


class RedisQueueStorage:
    """Implements application.ports.storage.QueueStorage on plain GET/SET."""

    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    async def read(self, key: str) -> str | None:
        value = await self._redis.get(key)
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def write(self, key: str, raw: str) -> None:
        await self._redis.set(key, raw)
