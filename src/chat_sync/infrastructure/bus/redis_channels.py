"""Realtime backend over Redis.

Row changes are published per table on ``<prefix>:<table>`` and filtered on
the subscriber side. Presence lives in a hash ``<prefix>:presence:<key>``
(member key -> JSON record); writers publish on ``<hash>:sync`` so that
subscribers reload the roster.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import redis.asyncio as aioredis

from chat_sync.application.dto.events import RowChange, RowFilter
from chat_sync.application.ports.backend import OnRowChangeCallback, OnStatusCallback
from chat_sync.config import settings
from chat_sync.domain.value_objects.enums import ChannelStatus
from chat_sync.infrastructure.bus.serializer import deserialize_row_change, dumps, serialize_row_change

logger = logging.getLogger(__name__)


class _PubSubChannel:
    """Background task that listens on Redis Pub/Sub channels and reports status."""

    def __init__(self, redis: aioredis.Redis, name: str, channels: list[str]) -> None:
        self._redis = redis
        self.name = name
        self._channels = channels
        self._pubsub: Any = None
        self._task: asyncio.Task[None] | None = None
        self._on_status: OnStatusCallback | None = None

    async def subscribe(self, on_status: OnStatusCallback) -> None:
        self._on_status = on_status
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(*self._channels)
            await self._on_subscribed()
        except Exception as exc:
            logger.warning("Redis subscribe failed for %s: %s", self.name, exc)
            await pubsub.aclose()
            on_status(ChannelStatus.CHANNEL_ERROR, str(exc))
            return
        self._pubsub = pubsub
        self._task = asyncio.create_task(self._listen(), name=f"redis-realtime:{self.name}")
        logger.info("Redis realtime channel %s subscribed to %s", self.name, self._channels)
        on_status(ChannelStatus.SUBSCRIBED, None)

    async def unsubscribe(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is not None:
            try:
                await pubsub.unsubscribe(*self._channels)
            finally:
                await pubsub.aclose()
            logger.info("Redis realtime channel %s closed", self.name)

    async def _on_subscribed(self) -> None:
        pass

    async def _dispatch(self, channel: str, data: Any) -> None:
        raise NotImplementedError

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    await self._dispatch(message["channel"], message["data"])
                except Exception:
                    logger.exception("Error processing realtime message on %s", self.name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Redis realtime channel %s lost: %s", self.name, exc)
            if self._on_status is not None:
                self._on_status(ChannelStatus.CHANNEL_ERROR, str(exc))


class RedisRowChangeChannel(_PubSubChannel):
    def __init__(
        self,
        redis: aioredis.Redis,
        name: str,
        filters: list[RowFilter],
        on_change: OnRowChangeCallback,
        *,
        prefix: str,
    ) -> None:
        self._prefix = prefix
        self._filters = filters
        self._on_change = on_change
        channels = sorted({f"{prefix}:{f.table}" for f in filters})
        super().__init__(redis, name, channels)

    async def _dispatch(self, channel: str, data: Any) -> None:
        table = channel.removeprefix(f"{self._prefix}:")
        change = deserialize_row_change(table, data)
        if any(f.accepts(change) for f in self._filters):
            await self._on_change(change)


class RedisPresenceChannel(_PubSubChannel):
    def __init__(self, redis: aioredis.Redis, key: str, member_key: str, *, prefix: str) -> None:
        self._hash = f"{prefix}:presence:{key}"
        self._sync_channel = f"{self._hash}:sync"
        self._member_key = member_key
        self._state: dict[str, list[dict[str, Any]]] = {}
        super().__init__(redis, f"presence:{key}", [self._sync_channel])

    def presence_state(self) -> dict[str, list[dict[str, Any]]]:
        return {k: list(v) for k, v in self._state.items()}

    async def track(self, record: dict[str, Any]) -> None:
        await self._redis.hset(self._hash, self._member_key, dumps(record))
        self._state[self._member_key] = [record]
        await self._redis.publish(self._sync_channel, self._member_key)

    async def untrack(self) -> None:
        await self._redis.hdel(self._hash, self._member_key)
        self._state.pop(self._member_key, None)
        await self._redis.publish(self._sync_channel, self._member_key)

    async def _on_subscribed(self) -> None:
        await self._reload()

    async def _dispatch(self, channel: str, data: Any) -> None:
        await self._reload()

    async def _reload(self) -> None:
        raw = await self._redis.hgetall(self._hash)
        state: dict[str, list[dict[str, Any]]] = {}
        for member, value in raw.items():
            try:
                state[member] = [json.loads(value)]
            except ValueError:
                logger.debug("Skipping unreadable presence entry %s", member)
        self._state = state


class RedisRealtimeBackend:
    """Implements application.ports.backend.RealtimeBackend."""

    def __init__(self, redis: aioredis.Redis, prefix: str | None = None) -> None:
        self._redis = redis
        self._prefix = prefix or settings.REALTIME_CHANNEL_PREFIX

    def open_row_changes(
        self,
        name: str,
        filters: list[RowFilter],
        on_change: OnRowChangeCallback,
    ) -> RedisRowChangeChannel:
        return RedisRowChangeChannel(self._redis, name, filters, on_change, prefix=self._prefix)

    def open_presence(self, key: str, member_key: str) -> RedisPresenceChannel:
        return RedisPresenceChannel(self._redis, key, member_key, prefix=self._prefix)

    async def publish_row_change(self, change: RowChange) -> None:
        """Publish side, used by whatever writes the rows."""
        await self._redis.publish(f"{self._prefix}:{change.table}", serialize_row_change(change))
