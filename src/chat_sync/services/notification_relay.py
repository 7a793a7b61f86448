"""In-app notifications: live inserts for the current user plus the RPC-backed CRUD."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable

from pydantic import ValidationError as PydanticValidationError

from chat_sync.application.dto.events import RowChange, RowFilter
from chat_sync.application.ports.backend import RealtimeBackend, RealtimeChannel, RowStore
from chat_sync.domain.entities.message import ConversationMessage
from chat_sync.domain.entities.notification import Notification
from chat_sync.domain.value_objects.enums import NotificationType, RowEventType
from chat_sync.sync.connection import ConnectionStateMachine
from chat_sync.sync.event_log import EventLog
from chat_sync.sync.network import NetworkMonitor

logger = logging.getLogger(__name__)

NOTIFICATIONS = "notifications"
PREVIEW_LENGTH = 100

NotificationListener = Callable[[Notification], None]


class NotificationRelay:
    def __init__(
        self,
        realtime: RealtimeBackend,
        store: RowStore,
        *,
        network: NetworkMonitor,
        event_log: EventLog,
    ) -> None:
        self._realtime = realtime
        self._store = store
        self._network = network
        self._event_log = event_log
        self._user_id: str | None = None
        self._connection: ConnectionStateMachine | None = None
        self._listeners: list[NotificationListener] = []

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def connection(self) -> ConnectionStateMachine | None:
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and self._connection.is_active

    def add_listener(self, listener: NotificationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def init(self, user_id: str) -> None:
        if self._user_id == user_id and self._connection is not None:
            return
        await self.dispose()
        self._user_id = user_id
        self._connection = ConnectionStateMachine(
            f"notifications:{user_id}",
            self._build_channel,
            event_log=self._event_log,
            network=self._network,
        )
        await self._connection.open()

    async def dispose(self) -> None:
        """Never raises."""
        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                await connection.dispose()
            except Exception:
                logger.exception("Error disposing notification channel")
        self._user_id = None

    async def relay_message(
        self,
        message: ConversationMessage,
        sender_name: str,
        recipient_ids: Iterable[str],
        *,
        expires_at: datetime | None = None,
    ) -> list[str]:
        """Create a ``message`` notification for every recipient except the sender."""
        body = message.original_text
        if len(body) > PREVIEW_LENGTH:
            body = body[:PREVIEW_LENGTH] + "..."
        created: list[str] = []
        for recipient_id in recipient_ids:
            if recipient_id == message.sender_id:
                continue
            notification_id = await self.create_notification(
                recipient_id,
                f"New message from {sender_name}",
                body,
                NotificationType.MESSAGE,
                data={"chatId": message.chat_id, "messageId": message.id},
                expires_at=expires_at,
            )
            if notification_id is not None:
                created.append(notification_id)
        return created

    async def create_notification(
        self,
        user_id: str,
        title: str,
        body: str,
        type: NotificationType,
        *,
        data: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> str | None:
        try:
            result = await self._store.rpc(
                "create_notification",
                {
                    "p_user_id": user_id,
                    "p_title": title,
                    "p_body": body,
                    "p_type": str(type),
                    "p_data": data or {},
                    "p_expires_at": expires_at.isoformat() if expires_at else None,
                },
            )
        except Exception as exc:
            logger.error("Failed to create notification for %s: %s", user_id, exc)
            return None
        return str(result) if result is not None else None

    async def list_notifications(self, limit: int = 50, offset: int = 0) -> list[Notification]:
        if self._user_id is None:
            return []
        try:
            rows = await self._store.select(
                NOTIFICATIONS,
                match={"user_id": self._user_id},
                order_by="created_at",
                descending=True,
                offset=offset,
                limit=limit,
            )
        except Exception as exc:
            logger.error("Failed to list notifications: %s", exc)
            return []
        return [n for n in (self._parse(row) for row in rows) if n is not None]

    async def unread_count(self) -> int:
        if self._user_id is None:
            return 0
        try:
            rows = await self._store.select(
                NOTIFICATIONS, match={"user_id": self._user_id, "read": False},
            )
        except Exception as exc:
            logger.error("Failed to count unread notifications: %s", exc)
            return 0
        return len(rows)

    async def mark_as_read(self, notification_id: str) -> bool:
        try:
            return bool(
                await self._store.rpc(
                    "mark_notification_read", {"p_notification_id": notification_id},
                )
            )
        except Exception as exc:
            logger.error("Failed to mark notification %s read: %s", notification_id, exc)
            return False

    async def mark_all_as_read(self) -> int:
        try:
            return int(await self._store.rpc("mark_all_notifications_read", {}) or 0)
        except Exception as exc:
            logger.error("Failed to mark all notifications read: %s", exc)
            return 0

    async def mark_clicked(self, notification_id: str) -> None:
        if self._user_id is None:
            return
        try:
            await self._store.update(
                NOTIFICATIONS,
                {"clicked": True},
                match={"id": notification_id, "user_id": self._user_id},
            )
        except Exception as exc:
            logger.error("Failed to mark notification %s clicked: %s", notification_id, exc)

    async def delete_notification(self, notification_id: str) -> bool:
        if self._user_id is None:
            return False
        try:
            await self._store.delete(
                NOTIFICATIONS, match={"id": notification_id, "user_id": self._user_id},
            )
        except Exception as exc:
            logger.error("Failed to delete notification %s: %s", notification_id, exc)
            return False
        return True

    def _build_channel(self) -> RealtimeChannel:
        return self._realtime.open_row_changes(
            f"notifications:{self._user_id}",
            [RowFilter(NOTIFICATIONS, RowEventType.INSERT, "user_id", self._user_id)],
            self._on_row_change,
        )

    async def _on_row_change(self, change: RowChange) -> None:
        if change.event_type != RowEventType.INSERT or not change.new:
            return
        notification = self._parse(change.new)
        if notification is None:
            return
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception("Notification listener failed")

    @staticmethod
    def _parse(row: dict[str, Any]) -> Notification | None:
        try:
            return Notification.model_validate(row)
        except PydanticValidationError:
            logger.warning("Dropping malformed notification row %s", row.get("id"))
            return None
