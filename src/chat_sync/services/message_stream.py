"""Realtime message stream for one conversation with an optimistic, durable send path."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from chat_sync.application.dto.events import RowChange, RowFilter
from chat_sync.application.dto.handlers import MessageHandlers, SendResult
from chat_sync.application.exceptions import (
    BackendError,
    ForbiddenError,
    NotFoundError,
    NotSubscribedError,
    ValidationError,
)
from chat_sync.application.ports.backend import RealtimeBackend, RealtimeChannel, RowStore
from chat_sync.application.ports.clock import Clock, SystemClock, epoch_ms
from chat_sync.config import settings
from chat_sync.domain.entities.message import ConversationMessage
from chat_sync.domain.entities.queued_send import QueuedSend
from chat_sync.domain.entities.reaction import Reaction
from chat_sync.domain.entities.read_receipt import ReadReceipt
from chat_sync.domain.value_objects.enums import ConnectionState, RowEventType
from chat_sync.domain.value_objects.ids import is_temp_id, new_temp_id
from chat_sync.sync.backoff import Backoff
from chat_sync.sync.connection import ConnectionStateMachine
from chat_sync.sync.event_log import EventLog
from chat_sync.sync.network import NetworkMonitor
from chat_sync.sync.send_queue import DurableSendQueue

logger = logging.getLogger(__name__)

MESSAGES = "messages"
REACTIONS = "message_reactions"
READ_RECEIPTS = "read_receipts"


class MessageStreamClient:
    """Keeps a local view of one conversation in sync with the backend.

    Sends are optimistic: the UI sees a temporary record at once, the payload
    goes through the ``DurableSendQueue`` and the record is swapped for the
    canonical row when the insert (or its realtime echo) confirms it.
    """

    def __init__(
        self,
        realtime: RealtimeBackend,
        store: RowStore,
        queue: DurableSendQueue,
        user_id: str,
        *,
        network: NetworkMonitor,
        event_log: EventLog,
        channel_backoff: Backoff | None = None,
        send_backoff: Backoff | None = None,
        max_send_retries: int | None = None,
        subscribe_timeout: float | None = None,
        page_size: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._realtime = realtime
        self._store = store
        self._queue = queue
        self._user_id = user_id
        self._network = network
        self._event_log = event_log
        self._channel_backoff = channel_backoff or Backoff(max_attempts=settings.CHANNEL_MAX_RETRIES)
        self._send_backoff = send_backoff or Backoff()
        self._max_send_retries = max_send_retries or settings.SEND_MAX_RETRIES
        self._subscribe_timeout = subscribe_timeout
        self._page_size = page_size or settings.MESSAGES_PER_PAGE
        self._clock = clock or SystemClock()

        self._conversation_id: str | None = None
        self._handlers = MessageHandlers()
        self._connection: ConnectionStateMachine | None = None
        self._connected = False

        self._messages: dict[str, ConversationMessage] = {}
        self._reactions: dict[str, dict[tuple[str, str, str], Reaction]] = {}
        self._receipts: dict[str, dict[str, ReadReceipt]] = {}
        self._foreign_message_ids: set[str] = set()
        self._reconciled: dict[str, ConversationMessage] = {}
        self._send_errors: dict[str, Exception] = {}
        self._sending: set[str] = set()
        self._page = 0
        self.has_more = True

        self._draining = False
        self._drain_again = False
        self._redrain_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._remove_network_listener = network.add_listener(self._on_network_change)

    # -- state -----------------------------------------------------------

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection.state if self._connection else ConnectionState.IDLE

    @property
    def connection(self) -> ConnectionStateMachine | None:
        return self._connection

    @property
    def is_connected(self) -> bool:
        return (
            self._connection is not None
            and self._connection.is_active
            and self._network.online
        )

    @property
    def messages(self) -> list[ConversationMessage]:
        return list(self._messages.values())

    @property
    def pending_sends(self) -> list[QueuedSend]:
        return self._queue.dequeue_all()

    def get_message(self, message_id: str) -> ConversationMessage | None:
        return self._messages.get(message_id)

    def reactions(self, message_id: str) -> list[Reaction]:
        return list(self._reactions.get(message_id, {}).values())

    def read_receipts(self, message_id: str) -> list[ReadReceipt]:
        return list(self._receipts.get(message_id, {}).values())

    # -- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        """Reload sends left over from a previous session."""
        pending = await self._queue.load()
        if pending:
            logger.info("Resuming %d unsent messages", len(pending))

    async def subscribe(self, conversation_id: str, handlers: MessageHandlers) -> None:
        """Subscribe to row changes for ``conversation_id``.

        Returns once the channel is active. If the first attempt cannot get
        there (offline, hidden, backend error) a warning is logged and the
        state machine keeps retrying in the background.
        """
        self._handlers = handlers

        if self._conversation_id == conversation_id and self._connection is not None:
            if self._connection.is_active:
                logger.debug("Already subscribed to chat %s", conversation_id)
                self._emit("on_connection_change", True)
                return
            state = await self._connection.open()
        else:
            await self._teardown_connection()
            self._reset_view(conversation_id)
            self._restore_pending()
            self._connection = ConnectionStateMachine(
                f"chat:{conversation_id}",
                self._build_channel,
                event_log=self._event_log,
                network=self._network,
                backoff=self._channel_backoff,
                subscribe_timeout=self._subscribe_timeout,
            )
            self._connection.add_listener(self._on_connection_state)
            state = await self._connection.open()

        if state != ConnectionState.ACTIVE:
            if not self._network.online:
                reason = "offline"
            elif not self._network.visible:
                reason = "backgrounded"
            else:
                reason = str(state)
            logger.warning(
                "Chat %s subscription not active (%s); continuing in the background",
                conversation_id, reason,
            )

    async def unsubscribe(self) -> None:
        """Idempotent teardown. Never raises."""
        try:
            await self._cancel_redrain()
            await self._teardown_connection()
        except Exception:
            logger.exception("Error unsubscribing from chat %s", self._conversation_id)
        self._connected = False

    async def close(self) -> None:
        await self.unsubscribe()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._remove_network_listener()
        self._handlers = MessageHandlers()
        self._conversation_id = None

    # -- imperative surface ---------------------------------------------

    async def send_message(self, text: str, reply_to: str | None = None) -> SendResult:
        conversation_id = self._require_conversation()
        if not text or not text.strip():
            raise ValidationError("Message text is empty")

        now = self._clock.now()
        temp_id = new_temp_id()
        item = QueuedSend(
            temp_id=temp_id,
            payload={
                "chat_id": conversation_id,
                "sender_id": self._user_id,
                "original_text": text,
                "original_language": settings.DEFAULT_LANGUAGE,
                "translations": {},
                "reply_to": reply_to,
                "timestamp": now.isoformat(),
            },
            timestamp=epoch_ms(now),
        )
        optimistic = self._optimistic_record(item)
        self._messages[temp_id] = optimistic
        self._emit("on_new_message", optimistic)

        self._sending.add(temp_id)
        try:
            await self._queue.enqueue(item)
            await self.drain_queue()
        finally:
            self._sending.discard(temp_id)

        confirmed = self._reconciled.get(temp_id)
        if confirmed is not None:
            return SendResult(temp_id, message=self._messages.get(confirmed.id, confirmed))
        return SendResult(temp_id, error=self._send_errors.pop(temp_id, None))

    async def edit_message(self, message_id: str, text: str) -> ConversationMessage:
        self._assert_own_message(message_id)
        if not text or not text.strip():
            raise ValidationError("Message text is empty")
        rows = await self._store.update(
            MESSAGES,
            {"original_text": text, "edited_at": self._clock.now().isoformat()},
            match={"id": message_id, "sender_id": self._user_id},
        )
        return self._apply_own_update(message_id, rows)

    async def delete_message(self, message_id: str) -> ConversationMessage:
        """Soft delete: the row stays and is rendered as a tombstone."""
        self._assert_own_message(message_id)
        rows = await self._store.update(
            MESSAGES,
            {"deleted_at": self._clock.now().isoformat()},
            match={"id": message_id, "sender_id": self._user_id},
        )
        return self._apply_own_update(message_id, rows)

    async def add_reaction(self, message_id: str, emoji: str) -> Reaction | None:
        """Idempotent: reacting twice with the same emoji is not an error."""
        if is_temp_id(message_id):
            raise ValidationError("Cannot react to an unconfirmed message")
        key = (message_id, self._user_id, emoji)
        try:
            row = await self._store.insert(
                REACTIONS,
                {"message_id": message_id, "user_id": self._user_id, "emoji": emoji},
            )
        except BackendError as exc:
            if not exc.is_unique_violation:
                raise
            logger.debug("Reaction %s on %s already exists", emoji, message_id)
            return self._reactions.get(message_id, {}).get(key)

        reaction = Reaction.from_row(row)
        bucket = self._reactions.setdefault(message_id, {})
        if key not in bucket:
            bucket[key] = reaction
            self._emit("on_reaction_added", reaction)
        return bucket[key]

    async def remove_reaction(self, message_id: str, emoji: str) -> None:
        await self._store.delete(
            REACTIONS,
            match={"message_id": message_id, "user_id": self._user_id, "emoji": emoji},
        )
        removed = self._reactions.get(message_id, {}).pop((message_id, self._user_id, emoji), None)
        if removed is not None:
            self._emit("on_reaction_removed", removed)

    async def mark_read(self, message_ids: list[str] | None = None) -> int:
        """Write read receipts for other senders' messages not yet read by us."""
        wanted = set(message_ids) if message_ids is not None else None
        unread = [
            m for m in self._messages.values()
            if not m.is_temporary
            and m.sender_id != self._user_id
            and self._user_id not in self._receipts.get(m.id, {})
            and (wanted is None or m.id in wanted)
        ]
        marked = 0
        for message in unread:
            try:
                row = await self._store.insert(
                    READ_RECEIPTS, {"message_id": message.id, "user_id": self._user_id},
                )
            except BackendError as exc:
                if exc.is_unique_violation:
                    continue
                raise
            if self._store_receipt(ReadReceipt.from_row(row)):
                marked += 1
        return marked

    async def refresh(self) -> list[ConversationMessage]:
        """Reload the newest page; unconfirmed optimistic records are kept."""
        conversation_id = self._require_conversation()
        rows = await self._store.select(
            MESSAGES,
            match={"chat_id": conversation_id},
            order_by="timestamp",
            descending=True,
            limit=self._page_size,
        )
        page = [ConversationMessage.from_row(r) for r in reversed(rows)]
        pending = [m for m in self._messages.values() if m.is_temporary]
        self._messages = {m.id: m for m in page}
        for message in pending:
            self._messages.setdefault(message.id, message)
        self._reactions.clear()
        self._receipts.clear()
        self._page = 0
        self.has_more = len(rows) == self._page_size
        await self._load_annotations([m.id for m in page])
        return self.messages

    async def load_more(self) -> list[ConversationMessage]:
        """Prepend the next page of older messages."""
        conversation_id = self._require_conversation()
        if not self.has_more:
            return []
        rows = await self._store.select(
            MESSAGES,
            match={"chat_id": conversation_id},
            order_by="timestamp",
            descending=True,
            offset=(self._page + 1) * self._page_size,
            limit=self._page_size,
        )
        if not rows:
            self.has_more = False
            return []
        older = [
            m for m in (ConversationMessage.from_row(r) for r in reversed(rows))
            if m.id not in self._messages
        ]
        merged = {m.id: m for m in older}
        merged.update(self._messages)
        self._messages = merged
        self._page += 1
        self.has_more = len(rows) == self._page_size
        await self._load_annotations([m.id for m in older])
        return older

    # -- send queue ------------------------------------------------------

    async def drain_queue(self) -> int:
        """Deliver queued sends oldest first; returns how many were confirmed.

        Only sends written in the subscribed conversation are delivered;
        the rest wait until that conversation is subscribed again. Drains
        never overlap: a request that arrives mid-drain makes the
        running drain take another pass. A failed delivery that is still
        below the retry ceiling stops the pass so later sends cannot overtake
        it, and a redrain is scheduled after the send backoff.
        """
        if self._draining:
            self._drain_again = True
            return 0
        self._draining = True
        delivered = 0
        try:
            while True:
                self._drain_again = False
                for item in self._queue.dequeue_all():
                    if not self.is_connected:
                        return delivered
                    if item.payload.get("chat_id") != self._conversation_id:
                        continue
                    if item.temp_id not in self._queue:
                        continue
                    if await self._deliver(item):
                        delivered += 1
                    elif item.temp_id in self._queue:
                        self._schedule_redrain()
                        return delivered
                if not self._drain_again:
                    return delivered
        finally:
            self._draining = False

    async def _deliver(self, item: QueuedSend) -> bool:
        try:
            row = await self._store.insert(MESSAGES, item.payload)
        except Exception as exc:
            if item.temp_id in self._reconciled:
                return True
            self._send_errors[item.temp_id] = exc
            retries = await self._queue.record_failure(item.temp_id)
            if retries >= self._max_send_retries:
                logger.error(
                    "Message %s failed %d times, giving up: %s", item.temp_id, retries, exc,
                )
                await self._queue.remove(item.temp_id)
                self._messages.pop(item.temp_id, None)
                if item.temp_id not in self._sending:
                    self._send_errors.pop(item.temp_id, None)
                self._emit("on_message_deleted", item.temp_id)
            else:
                logger.warning(
                    "Message %s send failed (attempt %d/%d): %s",
                    item.temp_id, retries, self._max_send_retries, exc,
                )
            return False

        await self._queue.remove(item.temp_id)
        self._send_errors.pop(item.temp_id, None)
        self._send_backoff.reset()
        self._reconcile(item.temp_id, row)
        return True

    def _reconcile(self, temp_id: str, row: dict[str, Any]) -> None:
        """Swap the optimistic record for the canonical one, at most once per temp id."""
        if temp_id in self._reconciled:
            return
        message = ConversationMessage.from_row(row)
        self._reconciled[temp_id] = message
        if message.chat_id != self._conversation_id:
            # Confirmed after the view moved to another conversation.
            logger.debug("Confirmed %s -> %s outside the current view", temp_id, message.id)
            return
        self._replace(temp_id, message)
        logger.debug("Reconciled %s -> %s", temp_id, message.id)
        self._emit("on_message_updated", message, temp_id)

    def _schedule_redrain(self) -> None:
        if self._redrain_task is not None and not self._redrain_task.done():
            return
        delay = self._send_backoff.advance()
        self._redrain_task = asyncio.create_task(
            self._redrain_after(delay), name="send-queue-redrain",
        )

    async def _redrain_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._redrain_task = None
        await self.drain_queue()

    async def _cancel_redrain(self) -> None:
        task, self._redrain_task = self._redrain_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # -- realtime events -------------------------------------------------

    def _build_channel(self) -> RealtimeChannel:
        conversation_id = self._require_conversation()
        filters = [
            RowFilter(MESSAGES, RowEventType.INSERT, "chat_id", conversation_id),
            RowFilter(MESSAGES, RowEventType.UPDATE, "chat_id", conversation_id),
            # DELETE payloads may carry only the primary key; scoped by local view instead.
            RowFilter(MESSAGES, RowEventType.DELETE),
            RowFilter(REACTIONS, RowEventType.INSERT),
            RowFilter(REACTIONS, RowEventType.DELETE),
            RowFilter(READ_RECEIPTS, RowEventType.INSERT),
        ]
        return self._realtime.open_row_changes(
            f"chat:{conversation_id}", filters, self._on_row_change,
        )

    async def _on_row_change(self, change: RowChange) -> None:
        try:
            if change.table == MESSAGES:
                await self._on_message_change(change)
            elif change.table == REACTIONS:
                await self._on_reaction_change(change)
            elif change.table == READ_RECEIPTS:
                await self._on_receipt_change(change)
        except Exception:
            logger.exception("Error processing %s on %s", change.event_type, change.table)

    async def _on_message_change(self, change: RowChange) -> None:
        if change.event_type == RowEventType.INSERT and change.new:
            message_id = str(change.new["id"])
            if message_id in self._messages:
                return
            echo = self._match_pending(change.new)
            if echo is not None:
                await self._queue.remove(echo.temp_id)
                self._reconcile(echo.temp_id, change.new)
                return
            message = ConversationMessage.from_row(change.new)
            self._messages[message_id] = message
            self._emit("on_new_message", message)

        elif change.event_type == RowEventType.UPDATE and change.new:
            message_id = str(change.new["id"])
            current = self._messages.get(message_id)
            if current is None:
                # Either outside the loaded window or still held under a temp id;
                # the send path reconciles the latter.
                logger.debug("Ignoring update for unknown message %s", message_id)
                return
            message = ConversationMessage.from_row(change.new)
            if message == current:
                return
            self._messages[message_id] = message
            self._emit("on_message_updated", message, message_id)

        elif change.event_type == RowEventType.DELETE and change.old:
            message_id = str(change.old.get("id"))
            if self._messages.pop(message_id, None) is not None:
                self._emit("on_message_deleted", message_id)

    async def _on_reaction_change(self, change: RowChange) -> None:
        if change.event_type == RowEventType.INSERT and change.new:
            reaction = Reaction.from_row(change.new)
            if not await self._belongs_to_conversation(reaction.message_id):
                return
            bucket = self._reactions.setdefault(reaction.message_id, {})
            if reaction.key in bucket:
                return
            bucket[reaction.key] = reaction
            self._emit("on_reaction_added", reaction)

        elif change.event_type == RowEventType.DELETE and change.old:
            reaction_id = str(change.old.get("id"))
            for bucket in self._reactions.values():
                for key, reaction in bucket.items():
                    if reaction.id == reaction_id:
                        del bucket[key]
                        self._emit("on_reaction_removed", reaction)
                        return

    async def _on_receipt_change(self, change: RowChange) -> None:
        if change.event_type != RowEventType.INSERT or not change.new:
            return
        receipt = ReadReceipt.from_row(change.new)
        if await self._belongs_to_conversation(receipt.message_id):
            self._store_receipt(receipt)

    def _store_receipt(self, receipt: ReadReceipt) -> bool:
        bucket = self._receipts.setdefault(receipt.message_id, {})
        if receipt.user_id in bucket:
            return False
        bucket[receipt.user_id] = receipt
        self._emit("on_read_receipt", receipt)
        return True

    async def _belongs_to_conversation(self, message_id: str) -> bool:
        if message_id in self._messages:
            return True
        if message_id in self._foreign_message_ids or is_temp_id(message_id):
            return False
        rows = await self._store.select(MESSAGES, match={"id": message_id}, limit=1)
        if rows and str(rows[0].get("chat_id")) == self._conversation_id:
            return True
        self._foreign_message_ids.add(message_id)
        return False

    def _match_pending(self, row: dict[str, Any]) -> QueuedSend | None:
        if str(row.get("sender_id")) != self._user_id:
            return None
        for item in self._queue.dequeue_all():
            if item.temp_id not in self._reconciled and item.matches_row(row):
                return item
        return None

    # -- connection ------------------------------------------------------

    def _on_connection_state(self, old: ConnectionState, new: ConnectionState) -> None:
        if new == ConnectionState.ACTIVE:
            self._set_connected(True)
            self._spawn(self.drain_queue(), name="send-queue-drain")
        elif new in (ConnectionState.ERROR, ConnectionState.CLOSED):
            self._set_connected(False)

    def _on_network_change(self, online: bool, visible: bool) -> None:
        if not online:
            self._set_connected(False)
        elif self._connection is not None and self._connection.is_active:
            self._set_connected(True)
            if len(self._queue):
                self._spawn(self.drain_queue(), name="send-queue-drain")

    def _set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        self._emit("on_connection_change", connected)

    async def _teardown_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.dispose()

    # -- helpers ---------------------------------------------------------

    def _require_conversation(self) -> str:
        if self._conversation_id is None:
            raise NotSubscribedError("Not subscribed to a conversation")
        return self._conversation_id

    def _assert_own_message(self, message_id: str) -> None:
        if is_temp_id(message_id):
            raise ValidationError("Message is not confirmed yet")
        current = self._messages.get(message_id)
        if current is not None and current.sender_id != self._user_id:
            raise ForbiddenError("Cannot modify another user's message")

    def _apply_own_update(self, message_id: str, rows: list[dict[str, Any]]) -> ConversationMessage:
        if not rows:
            raise NotFoundError("Message not found or not owned by caller")
        message = ConversationMessage.from_row(rows[0])
        current = self._messages.get(message_id)
        if current is not None and current != message:
            self._messages[message_id] = message
            self._emit("on_message_updated", message, message_id)
        return message

    def _reset_view(self, conversation_id: str) -> None:
        self._conversation_id = conversation_id
        self._messages = {}
        self._reactions = {}
        self._receipts = {}
        self._foreign_message_ids = set()
        self._reconciled = {}
        self._page = 0
        self.has_more = True
        self._connected = False

    def _restore_pending(self) -> None:
        for item in self._queue.dequeue_all():
            if item.payload.get("chat_id") != self._conversation_id:
                continue
            message = self._optimistic_record(item)
            self._messages[item.temp_id] = message
            self._emit("on_new_message", message)

    def _optimistic_record(self, item: QueuedSend) -> ConversationMessage:
        return ConversationMessage.from_row(
            {**item.payload, "id": item.temp_id, "created_at": item.payload.get("timestamp")}
        )

    def _replace(self, old_id: str, message: ConversationMessage) -> None:
        if old_id not in self._messages:
            self._messages[message.id] = message
            return
        replaced: dict[str, ConversationMessage] = {}
        for key, value in self._messages.items():
            if key == old_id:
                replaced[message.id] = message
            elif key != message.id:
                replaced[key] = value
        self._messages = replaced

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro, name=name)
        except RuntimeError:
            coro.close()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _load_annotations(self, message_ids: list[str]) -> None:
        if not message_ids:
            return
        try:
            for row in await self._store.select(REACTIONS, in_=("message_id", message_ids)):
                reaction = Reaction.from_row(row)
                self._reactions.setdefault(reaction.message_id, {})[reaction.key] = reaction
            for row in await self._store.select(READ_RECEIPTS, in_=("message_id", message_ids)):
                receipt = ReadReceipt.from_row(row)
                self._receipts.setdefault(receipt.message_id, {})[receipt.user_id] = receipt
        except BackendError as exc:
            logger.warning("Failed to load reactions/receipts: %s", exc)

    def _emit(self, name: str, *args: Any) -> None:
        handler = getattr(self._handlers, name)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception:
            logger.exception("Handler %s failed", name)
