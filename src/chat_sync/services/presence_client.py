"""Global presence: announce ourselves, keep the announcement fresh, read the roster."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError as PydanticValidationError

from chat_sync.application.ports.backend import (
    PresenceChannel,
    RealtimeBackend,
    RealtimeChannel,
    RowStore,
)
from chat_sync.application.ports.clock import Clock, SystemClock, as_utc
from chat_sync.config import settings
from chat_sync.domain.entities.presence import PresenceProfile, PresenceRecord
from chat_sync.domain.value_objects.enums import ConnectionState, UserStatus
from chat_sync.sync.backoff import Backoff
from chat_sync.sync.connection import ConnectionStateMachine
from chat_sync.sync.event_log import EventLog
from chat_sync.sync.network import NetworkMonitor

logger = logging.getLogger(__name__)


def is_user_online_by_last_seen(
    last_seen: datetime | str | None,
    threshold_minutes: int | None = None,
    now: datetime | None = None,
) -> bool:
    """Fallback online check for users not present on the channel."""
    if last_seen is None:
        return False
    if isinstance(last_seen, str):
        try:
            last_seen = datetime.fromisoformat(last_seen)
        except ValueError:
            return False
    last_seen = as_utc(last_seen)
    threshold = settings.LAST_SEEN_ONLINE_MINUTES if threshold_minutes is None else threshold_minutes
    now = now or datetime.now(timezone.utc)
    return now - last_seen < timedelta(minutes=threshold)


class PresenceClient:
    """Tracks this user on a shared presence channel.

    ``join`` never raises: failures land in ``error`` and are retried by the
    connection state machine. Every transition into ``active`` re-announces
    the profile with a fresh ``online_at``; a heartbeat re-announces on an
    interval so peers can tell a live session from a stale one.
    """

    def __init__(
        self,
        realtime: RealtimeBackend,
        store: RowStore,
        user_id: str,
        *,
        network: NetworkMonitor,
        event_log: EventLog,
        clock: Clock | None = None,
        backoff: Backoff | None = None,
        join_timeout: float | None = None,
        heartbeat_seconds: float | None = None,
        stale_seconds: float | None = None,
    ) -> None:
        self._realtime = realtime
        self._store = store
        self._user_id = user_id
        self._network = network
        self._event_log = event_log
        self._clock = clock or SystemClock()
        self._backoff = backoff or Backoff(max_attempts=settings.PRESENCE_MAX_RETRIES)
        self._join_timeout = (
            settings.PRESENCE_JOIN_TIMEOUT_SECONDS if join_timeout is None else join_timeout
        )
        self._heartbeat_seconds = heartbeat_seconds or settings.PRESENCE_HEARTBEAT_SECONDS
        self._stale_seconds = stale_seconds or settings.PRESENCE_STALE_SECONDS

        self.is_joining = False
        self.is_leaving = False
        self._leaves = 0
        self._channel_key: str | None = None
        self._profile: PresenceProfile | None = None
        self._connection: ConnectionStateMachine | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._last_heartbeat: datetime | None = None

    @property
    def channel_key(self) -> str | None:
        return self._channel_key

    @property
    def state(self) -> ConnectionState:
        return self._connection.state if self._connection else ConnectionState.IDLE

    @property
    def connection(self) -> ConnectionStateMachine | None:
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and self._connection.is_active

    @property
    def last_heartbeat(self) -> datetime | None:
        return self._last_heartbeat

    def is_stale(self) -> bool:
        if self._last_heartbeat is None:
            return True
        age = (self._clock.now() - self._last_heartbeat).total_seconds()
        return age >= self._stale_seconds

    async def join(self, channel_key: str, profile: PresenceProfile) -> ConnectionState:
        if self.is_joining or self.is_leaving:
            logger.debug("Presence join skipped: join or leave already in progress")
            return self.state
        if self._connection is not None and self._channel_key == channel_key and self.is_connected:
            self._profile = profile
            return self.state

        self.is_joining = True
        leaves = self._leaves
        try:
            if self._connection is not None:
                await self._leave_channel()
                if self._leaves != leaves:
                    logger.debug("Presence join on %s abandoned: left meanwhile", channel_key)
                    return self.state
            self._channel_key = channel_key
            self._profile = profile
            connection = ConnectionStateMachine(
                f"presence:{channel_key}",
                self._build_channel,
                event_log=self._event_log,
                network=self._network,
                backoff=self._backoff,
                subscribe_timeout=self._join_timeout,
                on_active=self._announce,
            )
            connection.add_listener(self._on_connection_state)
            self._connection = connection
            state = await connection.open()
            if self._leaves != leaves:
                logger.debug("Presence join on %s abandoned: left meanwhile", channel_key)
                await self._stop_heartbeat()
                await connection.dispose()
                return self.state
            if state != ConnectionState.ACTIVE:
                logger.warning("Presence join on %s not active yet (%s)", channel_key, state)
            return state
        except Exception:
            logger.exception("Presence join on %s failed", channel_key)
            return self.state
        finally:
            self.is_joining = False

    async def update_status(self, status: UserStatus) -> None:
        """Change the announced status and re-track it if connected."""
        if self._profile is None:
            return
        self._profile = self._profile.model_copy(update={"status": status})
        if self.is_connected and self._connection and self._connection.channel is not None:
            try:
                await self._announce(self._connection.channel)
            except Exception as exc:
                logger.warning("Failed to announce status %s: %s", status, exc)
                self._connection.fail(f"track failed: {exc}")

    async def leave(self) -> None:
        """Idempotent. Never raises."""
        if self.is_leaving:
            return
        self.is_leaving = True
        self._leaves += 1
        try:
            had_channel = self._connection is not None
            await self._leave_channel()
            if had_channel:
                await self._touch_last_seen()
        except Exception:
            logger.exception("Error leaving presence channel %s", self._channel_key)
        finally:
            self._channel_key = None
            self.is_leaving = False

    # -- roster ----------------------------------------------------------

    def presence_state(self) -> dict[str, list[PresenceRecord]]:
        """Current roster keyed by member key; malformed entries are dropped."""
        channel = self._presence_channel()
        if channel is None:
            return {}
        roster: dict[str, list[PresenceRecord]] = {}
        for key, entries in channel.presence_state().items():
            records = []
            for entry in entries:
                try:
                    records.append(PresenceRecord.model_validate(entry))
                except PydanticValidationError:
                    logger.debug("Dropping malformed presence entry under %s", key)
            if records:
                roster[key] = records
        return roster

    def online_users(self) -> list[PresenceRecord]:
        """One record per user (the most recent announcement).

        Invisible users and records not refreshed within the stale window
        (a peer that vanished without leaving) are excluded.
        """
        now = self._clock.now()
        users: dict[str, PresenceRecord] = {}
        for records in self.presence_state().values():
            for record in records:
                if (now - as_utc(record.online_at)).total_seconds() >= self._stale_seconds:
                    continue
                current = users.get(record.id)
                if current is None or as_utc(record.online_at) > as_utc(current.online_at):
                    users[record.id] = record
        return [r for r in users.values() if r.status != UserStatus.INVISIBLE]

    def online_count(self) -> int:
        return len(self.online_users())

    def is_user_online(self, user_id: str) -> bool:
        return any(r.id == user_id for r in self.online_users())

    # -- internals -------------------------------------------------------

    def _build_channel(self) -> RealtimeChannel:
        return self._realtime.open_presence(self._channel_key or settings.PRESENCE_CHANNEL, self._user_id)

    def _presence_channel(self) -> PresenceChannel | None:
        if self._connection is None:
            return None
        return self._connection.channel  # type: ignore[return-value]

    async def _announce(self, channel: RealtimeChannel) -> None:
        if self._profile is None:
            return
        now = self._clock.now()
        record = PresenceRecord(**self._profile.model_dump(), online_at=now)
        await channel.track(record.model_dump(mode="json"))  # type: ignore[attr-defined]
        self._last_heartbeat = now
        await self._touch_last_seen()
        if self._connection is not None and self._connection.channel is channel:
            self._restart_heartbeat()

    def _restart_heartbeat(self) -> None:
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            if self._heartbeat_task is asyncio.current_task():
                return
            self._heartbeat_task.cancel()
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(), name=f"presence-heartbeat:{self._channel_key}",
        )

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            connection = self._connection
            if connection is None or not connection.is_active or connection.channel is None:
                return
            try:
                await self._announce(connection.channel)
            except Exception as exc:
                logger.warning("Presence heartbeat failed: %s", exc)
                connection.fail(f"heartbeat failed: {exc}")
                return

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _on_connection_state(self, old: ConnectionState, new: ConnectionState) -> None:
        task = self._heartbeat_task
        if old == ConnectionState.ACTIVE and task is not None and task is not asyncio.current_task():
            task.cancel()
            self._heartbeat_task = None

    async def _leave_channel(self) -> None:
        await self._stop_heartbeat()
        connection, self._connection = self._connection, None
        if connection is None:
            return
        channel = connection.channel
        if channel is not None and connection.is_active:
            try:
                await channel.untrack()  # type: ignore[attr-defined]
            except Exception as exc:
                logger.warning("Presence untrack failed: %s", exc)
        await connection.dispose()

    async def _touch_last_seen(self) -> None:
        try:
            await self._store.update(
                "users",
                {"last_seen": self._clock.now().isoformat()},
                match={"id": self._user_id},
            )
        except Exception as exc:
            logger.debug("last_seen update failed for %s: %s", self._user_id, exc)
