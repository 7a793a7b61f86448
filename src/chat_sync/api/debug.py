"""Read-only HTTP/WebSocket view of the realtime event log."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable

from fastapi import APIRouter, FastAPI, Query, Request, WebSocket, WebSocketDisconnect

from chat_sync.api.schemas import ChannelSnapshot, EventsResponse, WsInbound, WsOutbound
from chat_sync.sync.event_log import ChannelEvent, EventLog

logger = logging.getLogger(__name__)

StateProvider = Callable[[], Iterable[dict[str, Any]]]


def create_debug_app(event_log: EventLog, state_provider: StateProvider | None = None) -> FastAPI:
    app = FastAPI(title="chat-sync debug", version="0.1.0")
    app.state.event_log = event_log
    app.state.state_provider = state_provider or (lambda: [])
    app.include_router(_build_router(event_log))
    return app


def _build_router(event_log: EventLog) -> APIRouter:
    router = APIRouter(tags=["debug"])

    @router.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/debug/realtime/events", response_model=EventsResponse)
    async def list_events(
        limit: int = Query(100, ge=1, le=1000),
        channel: str | None = Query(None),
    ) -> EventsResponse:
        return EventsResponse(items=event_log.tail(limit, channel=channel))

    @router.get("/debug/realtime/channels", response_model=list[ChannelSnapshot])
    async def list_channels(request: Request) -> list[ChannelSnapshot]:
        provider: StateProvider = request.app.state.state_provider
        return [ChannelSnapshot.model_validate(s) for s in provider()]

    @router.websocket("/debug/realtime/ws")
    async def stream_events(websocket: WebSocket) -> None:
        await websocket.accept()
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[ChannelEvent] = asyncio.Queue()

        def _on_event(event: ChannelEvent) -> None:
            # Events may be recorded from another thread's loop.
            loop.call_soon_threadsafe(queue.put_nowait, event)

        unsubscribe = event_log.subscribe(_on_event)
        sender: asyncio.Task[None] | None = None
        try:
            backlog = event_log.tail(50)
            await websocket.send_text(
                WsOutbound(
                    type="snapshot",
                    data={"events": [e.model_dump(mode="json") for e in backlog]},
                ).model_dump_json()
            )
            last_seq = backlog[-1].seq if backlog else 0
            sender = asyncio.create_task(
                _send_loop(websocket, queue, last_seq), name="debug-ws-sender",
            )
            await _read_loop(websocket)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Debug WS error")
        finally:
            unsubscribe()
            if sender is not None:
                sender.cancel()

    return router


async def _send_loop(ws: WebSocket, queue: asyncio.Queue[ChannelEvent], after_seq: int) -> None:
    while True:
        event = await queue.get()
        if event.seq <= after_seq:
            continue
        await ws.send_text(
            WsOutbound(type="event", data=event.model_dump(mode="json")).model_dump_json()
        )


async def _read_loop(ws: WebSocket) -> None:
    while True:
        raw = await ws.receive_text()
        try:
            msg = WsInbound.model_validate_json(raw)
        except Exception:
            await ws.send_text(
                WsOutbound(type="error", data={"code": "invalid_payload"}).model_dump_json()
            )
            continue
        if msg.type == "ping":
            await ws.send_text(WsOutbound(type="pong", data={}).model_dump_json())
        else:
            await ws.send_text(
                WsOutbound(type="error", data={"code": "unknown_type", "type": msg.type}).model_dump_json()
            )
