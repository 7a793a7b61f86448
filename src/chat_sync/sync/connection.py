"""Lifecycle of one realtime channel: subscribe, stay active, retry on error."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from chat_sync.application.exceptions import InvalidTransitionError
from chat_sync.application.ports.backend import RealtimeChannel
from chat_sync.config import settings
from chat_sync.domain.value_objects.enums import ChannelStatus, ConnectionState
from chat_sync.sync.backoff import Backoff
from chat_sync.sync.event_log import EventLog
from chat_sync.sync.network import NetworkMonitor

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[], RealtimeChannel]
OnActive = Callable[[RealtimeChannel], Awaitable[None]]
StateListener = Callable[[ConnectionState, ConnectionState], None]

_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.IDLE: frozenset({ConnectionState.SUBSCRIBING, ConnectionState.CLOSED}),
    ConnectionState.SUBSCRIBING: frozenset(
        {ConnectionState.ACTIVE, ConnectionState.ERROR, ConnectionState.CLOSED}
    ),
    ConnectionState.ACTIVE: frozenset({ConnectionState.ERROR, ConnectionState.CLOSED}),
    ConnectionState.ERROR: frozenset({ConnectionState.SUBSCRIBING, ConnectionState.CLOSED}),
    ConnectionState.CLOSED: frozenset({ConnectionState.SUBSCRIBING}),
}


class ConnectionStateMachine:
    """Owns one channel and its ``ConnectionState``.

    ``factory`` builds an unsubscribed backend channel; this machine owns it
    from then on and its status callback drives the state. Entering ``error``
    schedules a single backoff retry, or defers until the network monitor
    reports online and visible again when retries are exhausted or the
    environment is unusable. ``on_active`` runs after every transition into
    ``active``; if it raises, the channel is treated as failed.
    """

    def __init__(
        self,
        name: str,
        factory: ChannelFactory,
        *,
        event_log: EventLog,
        network: NetworkMonitor,
        backoff: Backoff | None = None,
        subscribe_timeout: float | None = None,
        on_active: OnActive | None = None,
    ) -> None:
        self.name = name
        self._factory = factory
        self._event_log = event_log
        self._network = network
        self._backoff = backoff or Backoff(max_attempts=settings.CHANNEL_MAX_RETRIES)
        self._subscribe_timeout = (
            settings.SUBSCRIBE_TIMEOUT_SECONDS if subscribe_timeout is None else subscribe_timeout
        )
        self._on_active = on_active

        self._state = ConnectionState.IDLE
        self._channel: RealtimeChannel | None = None
        self._generation = 0
        self._opening = False
        self._closing = False
        self._deferred = False
        self._waiter: asyncio.Future[tuple[ChannelStatus, str | None]] | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._listeners: list[StateListener] = []
        self._remove_network_listener = network.add_listener(self._on_network_change)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == ConnectionState.ACTIVE

    @property
    def channel(self) -> RealtimeChannel | None:
        return self._channel

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    @property
    def deferred(self) -> bool:
        return self._deferred

    def snapshot(self) -> dict[str, object]:
        return {
            "name": self.name,
            "state": self._state,
            "retry_pending": self.retry_pending,
            "deferred": self._deferred,
        }

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def open(self) -> ConnectionState:
        """Subscribe unless already subscribing or active.

        Returns the state reached after this attempt; connection problems
        never raise.
        """
        if self._opening or self._state in (ConnectionState.SUBSCRIBING, ConnectionState.ACTIVE):
            return self._state
        if self._state in (ConnectionState.IDLE, ConnectionState.CLOSED):
            self._backoff.reset()
        await self._cancel_retry()
        self._deferred = False
        await self._attempt()
        return self._state

    def fail(self, reason: str) -> None:
        """Owner-detected failure (e.g. a heartbeat that could not be sent)."""
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result((ChannelStatus.CHANNEL_ERROR, reason))
            return
        if self._state == ConnectionState.ACTIVE:
            self._enter_error(reason)

    async def close(self) -> None:
        """Tear down the channel and cancel timers. Never raises."""
        if self._state == ConnectionState.CLOSED and self._channel is None:
            return
        self._closing = True
        try:
            await self._cancel_retry()
            self._generation += 1
            if self._waiter is not None and not self._waiter.done():
                self._waiter.set_result((ChannelStatus.CLOSED, "closed"))
            await self._teardown_channel()
            self._deferred = False
            if self._state != ConnectionState.CLOSED:
                self._transition(ConnectionState.CLOSED)
        except Exception:
            logger.exception("Error closing channel %s", self.name)
        finally:
            self._closing = False

    async def dispose(self) -> None:
        await self.close()
        self._remove_network_listener()
        self._listeners.clear()

    async def _attempt(self) -> None:
        self._opening = True
        try:
            await self._teardown_channel()
            self._generation += 1
            generation = self._generation
            self._waiter = asyncio.get_running_loop().create_future()
            self._transition(ConnectionState.SUBSCRIBING)

            def _on_status(status: ChannelStatus, detail: str | None = None) -> None:
                self._on_status(generation, status, detail)

            status: ChannelStatus
            detail: str | None
            channel: RealtimeChannel | None = None
            try:
                channel = self._factory()
                self._channel = channel
                await channel.subscribe(_on_status)
                status, detail = await asyncio.wait_for(self._waiter, self._subscribe_timeout)
            except asyncio.CancelledError:
                if channel is not None:
                    if self._channel is channel:
                        self._channel = None
                    await self._safe_unsubscribe(channel)
                raise
            except asyncio.TimeoutError:
                status, detail = ChannelStatus.TIMED_OUT, "subscribe timed out"
            except Exception as exc:
                logger.warning("Channel %s failed to subscribe: %s", self.name, exc)
                status, detail = ChannelStatus.CHANNEL_ERROR, str(exc) or type(exc).__name__
            finally:
                self._waiter = None

            if generation != self._generation or self._state != ConnectionState.SUBSCRIBING:
                return

            if status != ChannelStatus.SUBSCRIBED:
                self._enter_error(detail or status.value)
                return

            self._deferred = False
            self._transition(ConnectionState.ACTIVE)
            if self._on_active is not None and self._channel is not None:
                try:
                    await self._on_active(self._channel)
                except Exception as exc:
                    logger.warning("Channel %s activation hook failed: %s", self.name, exc)
                    if generation == self._generation and self._state == ConnectionState.ACTIVE:
                        self._enter_error(f"activation failed: {exc}")
                    return
            self._backoff.reset()
        finally:
            self._opening = False

    def _on_status(self, generation: int, status: ChannelStatus, detail: str | None) -> None:
        if generation != self._generation:
            logger.debug("Ignoring %s from stale channel %s", status, self.name)
            return
        self._event_log.record(self.name, "status", detail=f"{status}{': ' + detail if detail else ''}")
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result((status, detail))
            return
        if status == ChannelStatus.SUBSCRIBED or self._closing:
            return
        if self._state == ConnectionState.ACTIVE:
            self._enter_error(detail or status.value)

    def _enter_error(self, reason: str) -> None:
        self._transition(ConnectionState.ERROR, detail=reason)
        self._event_log.record(self.name, "error", detail=reason)
        self._schedule_retry()

    def _schedule_retry(self) -> None:
        task = self._retry_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            return
        if self._backoff.exhausted:
            self._defer(f"retry ceiling reached after {self._backoff.attempt} attempts")
            return
        if not self._network.online:
            self._defer("offline")
            return
        if not self._network.visible:
            self._defer("hidden")
            return
        attempt = self._backoff.attempt + 1
        delay = self._backoff.advance()
        logger.info("Channel %s retry %d in %.1fs", self.name, attempt, delay)
        self._event_log.record(
            self.name, "retry_scheduled", detail=f"attempt {attempt} in {delay:.2f}s"
        )
        self._retry_task = asyncio.create_task(
            self._retry_after(delay), name=f"{self.name}-retry",
        )

    def _defer(self, reason: str) -> None:
        self._deferred = True
        logger.warning("Channel %s retry deferred: %s", self.name, reason)
        self._event_log.record(self.name, "retry_deferred", detail=reason)

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._state != ConnectionState.ERROR:
            return
        if not self._network.usable:
            self._defer("offline" if not self._network.online else "hidden")
            return
        await self._attempt()

    def _on_network_change(self, online: bool, visible: bool) -> None:
        if not (online and visible) or self._state != ConnectionState.ERROR:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._retry_task is not None and not self._retry_task.done():
            self._retry_task.cancel()
        self._backoff.reset()
        self._deferred = False
        logger.info("Channel %s: environment usable again, reconnecting", self.name)
        self._retry_task = loop.create_task(self._attempt(), name=f"{self.name}-resume")

    async def _cancel_retry(self) -> None:
        task, self._retry_task = self._retry_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _teardown_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            await self._safe_unsubscribe(channel)

    async def _safe_unsubscribe(self, channel: RealtimeChannel) -> None:
        try:
            await channel.unsubscribe()
        except Exception as exc:
            logger.warning("Error cleaning up channel %s: %s", self.name, exc)
            self._event_log.record(self.name, "cleanup_failed", detail=str(exc))

    def _transition(self, new: ConnectionState, *, detail: str | None = None) -> None:
        old = self._state
        if new not in _TRANSITIONS[old]:
            raise InvalidTransitionError(f"{self.name}: {old} -> {new}")
        self._state = new
        logger.info("Channel %s: %s -> %s", self.name, old, new)
        self._event_log.record(self.name, "transition", old_state=old, new_state=new, detail=detail)
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("Connection listener failed for %s", self.name)
