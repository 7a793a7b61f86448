"""Per-user wiring of the sync clients."""
from __future__ import annotations

import logging
from typing import Any

import redis.asyncio as aioredis
from fastapi import FastAPI

from chat_sync.api.debug import create_debug_app
from chat_sync.application.ports.backend import RealtimeBackend, RowStore
from chat_sync.application.ports.clock import Clock, SystemClock
from chat_sync.application.ports.storage import QueueStorage
from chat_sync.config import settings
from chat_sync.domain.entities.presence import PresenceProfile
from chat_sync.infrastructure.bus.redis_channels import RedisRealtimeBackend
from chat_sync.infrastructure.storage.redis_queue_storage import RedisQueueStorage
from chat_sync.services.message_stream import MessageStreamClient
from chat_sync.services.notification_relay import NotificationRelay
from chat_sync.services.presence_client import PresenceClient
from chat_sync.sync.event_log import EventLog
from chat_sync.sync.network import NetworkMonitor
from chat_sync.sync.send_queue import DurableSendQueue

logger = logging.getLogger(__name__)


class ChatSyncSession:
    """Owns the clients for one signed-in user.

    Construct explicitly and pair ``init`` with ``dispose``; there is no
    module-level instance.
    """

    def __init__(
        self,
        realtime: RealtimeBackend,
        store: RowStore,
        queue_storage: QueueStorage,
        *,
        network: NetworkMonitor | None = None,
        event_log: EventLog | None = None,
        clock: Clock | None = None,
        redis: aioredis.Redis | None = None,
    ) -> None:
        self.realtime = realtime
        self.store = store
        self.network = network or NetworkMonitor()
        self.event_log = event_log or EventLog()
        self.clock = clock or SystemClock()
        self.queue = DurableSendQueue(queue_storage)
        self.notifications = NotificationRelay(
            realtime, store, network=self.network, event_log=self.event_log,
        )
        self.messages: MessageStreamClient | None = None
        self.presence: PresenceClient | None = None
        self.user_id: str | None = None
        self._redis = redis

    @classmethod
    def from_settings(cls, store: RowStore, **kwargs: Any) -> ChatSyncSession:
        """Redis-backed realtime and queue storage from ``settings.REDIS_URL``."""
        redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        logger.info("Redis connection pool created")
        return cls(
            RedisRealtimeBackend(redis),
            store,
            RedisQueueStorage(redis),
            redis=redis,
            **kwargs,
        )

    async def init(self, user_id: str, profile: PresenceProfile | None = None) -> None:
        if self.user_id is not None:
            await self.dispose()
        self.user_id = user_id
        await self.queue.load()
        self.messages = MessageStreamClient(
            self.realtime,
            self.store,
            self.queue,
            user_id,
            network=self.network,
            event_log=self.event_log,
            clock=self.clock,
        )
        self.presence = PresenceClient(
            self.realtime,
            self.store,
            user_id,
            network=self.network,
            event_log=self.event_log,
            clock=self.clock,
        )
        await self.notifications.init(user_id)
        if profile is not None:
            await self.presence.join(settings.PRESENCE_CHANNEL, profile)
        logger.info("Chat sync session started for %s", user_id)

    async def dispose(self) -> None:
        """Tear everything down. Never raises."""
        if self.messages is not None:
            try:
                await self.messages.close()
            except Exception:
                logger.exception("Error closing message stream")
            self.messages = None
        if self.presence is not None:
            await self.presence.leave()
            self.presence = None
        await self.notifications.dispose()
        self.user_id = None

    async def aclose(self) -> None:
        """Dispose and release the Redis pool created by ``from_settings``."""
        await self.dispose()
        if self._redis is not None:
            try:
                await self._redis.aclose()
                logger.info("Redis connection pool closed")
            except Exception:
                logger.exception("Error closing Redis connection")
            self._redis = None

    def channel_states(self) -> list[dict[str, object]]:
        clients = (self.messages, self.presence, self.notifications)
        return [
            c.connection.snapshot()
            for c in clients
            if c is not None and c.connection is not None
        ]

    def debug_app(self) -> FastAPI:
        return create_debug_app(self.event_log, self.channel_states)
