from __future__ import annotations

import asyncio
import json

import pytest

from chat_sync.application.dto.events import RowChange
from chat_sync.application.exceptions import (
    ForbiddenError,
    NotSubscribedError,
    ValidationError,
)
from chat_sync.domain.value_objects.enums import ChannelStatus, ConnectionState, RowEventType
from chat_sync.domain.value_objects.ids import is_temp_id
from chat_sync.services.message_stream import MessageStreamClient
from chat_sync.sync.backoff import Backoff
from chat_sync.sync.send_queue import DurableSendQueue
from tests.conftest import (
    CHAT_ID,
    OTHER_CHAT_ID,
    OTHER_USER_ID,
    T0,
    USER_ID,
    Recorder,
    message_row,
)

QUEUE_KEY = "test_message_queue"


@pytest.fixture
def make_client(backend, store, storage, network, event_log, clock):
    def _make(**kwargs) -> MessageStreamClient:
        kwargs.setdefault("channel_backoff", Backoff(60, 60, max_attempts=3))
        kwargs.setdefault("send_backoff", Backoff(60, 60))
        client = MessageStreamClient(
            backend,
            store,
            DurableSendQueue(storage, key=QUEUE_KEY),
            USER_ID,
            network=network,
            event_log=event_log,
            clock=clock,
            **kwargs,
        )
        return client

    return _make


def insert(row) -> RowChange:
    return RowChange("messages", RowEventType.INSERT, new=row)


@pytest.mark.asyncio
async def test_subscribe_reports_connection(make_client, recorder):
    client = make_client()

    await client.subscribe(CHAT_ID, recorder.handlers())

    assert client.is_connected is True
    assert client.connection_state == ConnectionState.ACTIVE
    assert recorder.of("connection") == [("connection", True)]
    await client.close()


@pytest.mark.asyncio
async def test_resubscribe_same_conversation_opens_no_new_channel(make_client, recorder, backend):
    client = make_client()

    await client.subscribe(CHAT_ID, recorder.handlers())
    await client.subscribe(CHAT_ID, recorder.handlers())

    assert len(backend.channels) == 1
    assert recorder.of("connection") == [("connection", True), ("connection", True)]
    await client.close()


@pytest.mark.asyncio
async def test_switching_conversation_tears_down_previous_channel(make_client, recorder, backend):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    first = backend.latest

    await client.subscribe(OTHER_CHAT_ID, recorder.handlers())

    assert first.unsubscribed is True
    assert client.conversation_id == OTHER_CHAT_ID
    assert len(backend.live_channels("chat:")) == 1
    await client.close()


@pytest.mark.asyncio
async def test_subscribe_failure_does_not_raise(make_client, recorder, backend):
    backend.default_status = ChannelStatus.CHANNEL_ERROR
    client = make_client()

    await client.subscribe(CHAT_ID, recorder.handlers())

    assert client.connection_state == ConnectionState.ERROR
    assert client.is_connected is False
    await client.close()


@pytest.mark.asyncio
async def test_send_requires_subscription(make_client):
    client = make_client()

    with pytest.raises(NotSubscribedError):
        await client.send_message("hi")


@pytest.mark.asyncio
async def test_send_rejects_empty_text(make_client, recorder):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())

    with pytest.raises(ValidationError):
        await client.send_message("   ")
    await client.close()


@pytest.mark.asyncio
async def test_send_while_connected_reconciles_once(make_client, recorder, store, storage):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())

    result = await client.send_message("hello there")

    assert result.delivered is True
    assert is_temp_id(result.temp_id)
    canonical = result.message.id
    assert recorder.of("new") == [("new", result.temp_id)]
    assert recorder.of("updated") == [("updated", canonical, result.temp_id)]
    assert [m.id for m in client.messages] == [canonical]
    assert len(client.pending_sends) == 0
    assert json.loads(storage.data[QUEUE_KEY]) == []
    assert store.rows("messages")[0]["original_text"] == "hello there"
    await client.close()


@pytest.mark.asyncio
async def test_echo_after_confirmation_is_ignored(make_client, recorder, store, backend):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    result = await client.send_message("hello")

    await backend.push(insert(store.rows("messages")[0]))

    assert len(recorder.of("new")) == 1
    assert len(recorder.of("updated")) == 1
    assert [m.id for m in client.messages] == [result.message.id]
    await client.close()


@pytest.mark.asyncio
async def test_echo_before_confirmation_reconciles_once(make_client, recorder, store, backend):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    store.hold_inserts = asyncio.Event()

    send = asyncio.create_task(client.send_message("racing"))
    await asyncio.sleep(0.01)
    row = store.rows("messages")[0]
    await backend.push(insert(row))
    store.hold_inserts.set()
    result = await send

    assert result.delivered is True
    assert recorder.of("updated") == [("updated", row["id"], result.temp_id)]
    assert [m.id for m in client.messages] == [row["id"]]
    assert len(client.pending_sends) == 0
    await client.close()


@pytest.mark.asyncio
async def test_offline_send_is_delivered_after_reconnect(make_client, recorder, network, store):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    network.set_online(False)

    result = await client.send_message("hi")

    assert result.delivered is False
    assert result.error is None
    assert [m.original_text for m in client.messages] == ["hi"]
    assert client.messages[0].is_temporary is True
    assert len(client.pending_sends) == 1
    assert store.count("insert", "messages") == 0

    network.set_online(True)
    await asyncio.sleep(0.01)

    assert len(client.pending_sends) == 0
    assert len(recorder.of("updated")) == 1
    assert client.messages[0].is_temporary is False
    assert recorder.of("connection") == [
        ("connection", True), ("connection", False), ("connection", True),
    ]
    await client.close()


@pytest.mark.asyncio
async def test_sends_leave_in_enqueue_order(make_client, recorder, network, store, clock):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    network.set_online(False)
    for text in ("one", "two", "three"):
        await client.send_message(text)
        clock.advance(1)

    network.set_online(True)
    await asyncio.sleep(0.01)

    assert [r["original_text"] for r in store.rows("messages")] == ["one", "two", "three"]
    assert [m.original_text for m in client.messages] == ["one", "two", "three"]
    await client.close()


@pytest.mark.asyncio
async def test_sends_keep_order_after_channel_error(make_client, recorder, backend, store, clock):
    client = make_client(channel_backoff=Backoff(0.02, 0.02, max_attempts=3))
    await client.subscribe(CHAT_ID, recorder.handlers())
    await asyncio.sleep(0.01)

    backend.latest.emit_status(ChannelStatus.CHANNEL_ERROR, "socket dropped")
    assert client.connection_state == ConnectionState.ERROR
    for text in ("one", "two", "three"):
        await client.send_message(text)
        clock.advance(1)
    assert store.count("insert", "messages") == 0

    await asyncio.sleep(0.1)

    assert client.connection_state == ConnectionState.ACTIVE
    assert [r["original_text"] for r in store.rows("messages")] == ["one", "two", "three"]
    assert [m.original_text for m in client.messages] == ["one", "two", "three"]
    assert client.pending_sends == []
    assert recorder.of("connection") == [
        ("connection", True), ("connection", False), ("connection", True),
    ]
    await client.close()


@pytest.mark.asyncio
async def test_queued_send_waits_for_its_own_conversation(make_client, recorder, network, store):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    await asyncio.sleep(0.01)
    network.set_online(False)
    result = await client.send_message("meant for chat-1")

    other = Recorder()
    await client.subscribe(OTHER_CHAT_ID, other.handlers())
    network.set_online(True)
    await asyncio.sleep(0.01)

    assert client.messages == []
    assert other.of("new") == []
    assert other.of("updated") == []
    assert store.count("insert", "messages") == 0
    assert [q.temp_id for q in client.pending_sends] == [result.temp_id]

    back = Recorder()
    await client.subscribe(CHAT_ID, back.handlers())
    await asyncio.sleep(0.01)

    assert back.of("new") == [("new", result.temp_id)]
    assert len(back.of("updated")) == 1
    assert [(m.chat_id, m.original_text) for m in client.messages] == [(CHAT_ID, "meant for chat-1")]
    assert client.pending_sends == []
    await client.close()


@pytest.mark.asyncio
async def test_confirmation_after_switching_conversation_stays_out_of_view(make_client, recorder, store):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    await asyncio.sleep(0.01)
    store.hold_inserts = asyncio.Event()
    sending = asyncio.create_task(client.send_message("in flight"))
    await asyncio.sleep(0.01)

    other = Recorder()
    await client.subscribe(OTHER_CHAT_ID, other.handlers())
    store.hold_inserts.set()
    result = await sending

    assert result.delivered is True
    assert result.message.chat_id == CHAT_ID
    assert client.messages == []
    assert other.events == [("connection", True)]
    assert client.pending_sends == []

    await client.subscribe(CHAT_ID, recorder.handlers())
    assert client._reconciled == {}
    await client.close()


@pytest.mark.asyncio
async def test_failed_send_blocks_later_sends_until_retry(make_client, recorder, network, store, clock):
    client = make_client(send_backoff=Backoff(0.05, 0.05))
    await client.subscribe(CHAT_ID, recorder.handlers())
    await asyncio.sleep(0.01)
    network.set_online(False)
    await client.send_message("first")
    clock.advance(1)
    await client.send_message("second")
    store.fail_inserts["messages"] = 1

    network.set_online(True)
    await asyncio.sleep(0.01)
    assert store.count("insert", "messages") == 1
    assert [m.original_text for m in client.messages] == ["first", "second"]

    await asyncio.sleep(0.2)

    assert [r["original_text"] for r in store.rows("messages")] == ["first", "second"]
    assert len(client.pending_sends) == 0
    await client.close()


@pytest.mark.asyncio
async def test_send_dropped_after_retry_ceiling(make_client, recorder, store, storage):
    client = make_client(send_backoff=Backoff(0.01, 0.01))
    await client.subscribe(CHAT_ID, recorder.handlers())
    store.fail_inserts["messages"] = 10

    result = await client.send_message("doomed")
    assert result.delivered is False
    assert result.error is not None

    await asyncio.sleep(0.2)

    assert store.count("insert", "messages") == 3
    assert recorder.of("deleted") == [("deleted", result.temp_id)]
    assert client.messages == []
    assert json.loads(storage.data[QUEUE_KEY]) == []
    assert client._send_errors == {}
    await client.close()


@pytest.mark.asyncio
async def test_queue_resumes_in_next_session(make_client, recorder, network, store):
    first = make_client()
    await first.subscribe(CHAT_ID, recorder.handlers())
    network.set_online(False)
    result = await first.send_message("from last session")
    await first.close()
    network.set_online(True)

    second = make_client()
    await second.start()
    fresh = Recorder()
    await second.subscribe(CHAT_ID, fresh.handlers())
    await asyncio.sleep(0.01)

    assert fresh.of("new") == [("new", result.temp_id)]
    assert len(fresh.of("updated")) == 1
    assert [r["original_text"] for r in store.rows("messages")] == ["from last session"]
    assert len(second.pending_sends) == 0
    await second.close()


@pytest.mark.asyncio
async def test_incoming_message_is_delivered_once(make_client, recorder, backend):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    row = message_row("m-1")

    await backend.push(insert(row))
    await backend.push(insert(row))

    assert recorder.of("new") == [("new", "m-1")]
    await client.close()


@pytest.mark.asyncio
async def test_other_conversation_insert_is_filtered(make_client, recorder, backend):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())

    await backend.push(insert(message_row("m-9", chat_id=OTHER_CHAT_ID)))

    assert recorder.of("new") == []
    await client.close()


@pytest.mark.asyncio
async def test_update_and_delete_events(make_client, recorder, backend):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    await backend.push(insert(message_row("m-1")))

    await backend.push(RowChange("messages", RowEventType.UPDATE, new=message_row("unknown")))
    edited = message_row("m-1", text="edited", edited_at=T0.isoformat())
    await backend.push(RowChange("messages", RowEventType.UPDATE, new=edited))
    await backend.push(RowChange("messages", RowEventType.UPDATE, new=edited))

    assert recorder.of("updated") == [("updated", "m-1", "m-1")]
    assert client.get_message("m-1").original_text == "edited"

    await backend.push(RowChange("messages", RowEventType.DELETE, old={"id": "m-1"}))

    assert recorder.of("deleted") == [("deleted", "m-1")]
    assert client.get_message("m-1") is None
    await client.close()


@pytest.mark.asyncio
async def test_soft_delete_arrives_as_tombstone(make_client, recorder, backend):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    await backend.push(insert(message_row("m-1")))

    await backend.push(
        RowChange("messages", RowEventType.UPDATE, new=message_row("m-1", deleted_at=T0.isoformat()))
    )

    assert client.get_message("m-1").is_deleted is True
    await client.close()


@pytest.mark.asyncio
async def test_edit_and_delete_own_message(make_client, recorder, store):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    sent = (await client.send_message("typo")).message

    edited = await client.edit_message(sent.id, "fixed")
    assert edited.original_text == "fixed"
    assert edited.edited_at is not None
    assert client.get_message(sent.id).original_text == "fixed"

    deleted = await client.delete_message(sent.id)
    assert deleted.is_deleted is True
    assert store.rows("messages")[0]["deleted_at"] is not None
    await client.close()


@pytest.mark.asyncio
async def test_cannot_edit_someone_elses_or_unconfirmed_message(make_client, recorder, backend, network):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    await backend.push(insert(message_row("m-1", sender_id=OTHER_USER_ID)))

    with pytest.raises(ForbiddenError):
        await client.edit_message("m-1", "hijack")

    network.set_online(False)
    pending = await client.send_message("not yet")
    with pytest.raises(ValidationError):
        await client.delete_message(pending.temp_id)
    await client.close()


@pytest.mark.asyncio
async def test_duplicate_reaction_is_not_an_error(make_client, recorder, backend, store):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    await backend.push(insert(message_row("m-1")))

    first = await client.add_reaction("m-1", "👍")
    second = await client.add_reaction("m-1", "👍")

    assert second == first
    assert len(client.reactions("m-1")) == 1
    assert len(store.rows("message_reactions")) == 1
    assert recorder.of("reaction_added") == [("reaction_added", "m-1", "👍")]

    await backend.push(
        RowChange("message_reactions", RowEventType.INSERT, new=store.rows("message_reactions")[0])
    )
    assert len(recorder.of("reaction_added")) == 1
    await client.close()


@pytest.mark.asyncio
async def test_remove_reaction(make_client, recorder, backend, store):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    await backend.push(insert(message_row("m-1")))
    await client.add_reaction("m-1", "🎉")

    await client.remove_reaction("m-1", "🎉")

    assert client.reactions("m-1") == []
    assert store.rows("message_reactions") == []
    assert recorder.of("reaction_removed") == [("reaction_removed", "m-1", "🎉")]
    await client.close()


@pytest.mark.asyncio
async def test_reaction_events_are_scoped_to_conversation(make_client, recorder, backend, store):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    store.seed("messages", **message_row("foreign", chat_id=OTHER_CHAT_ID))
    store.seed("messages", **message_row("older", chat_id=CHAT_ID))

    await backend.push(RowChange(
        "message_reactions", RowEventType.INSERT,
        new={"id": "r-1", "message_id": "foreign", "user_id": OTHER_USER_ID, "emoji": "😀"},
    ))
    await backend.push(RowChange(
        "message_reactions", RowEventType.INSERT,
        new={"id": "r-2", "message_id": "older", "user_id": OTHER_USER_ID, "emoji": "😀"},
    ))

    assert recorder.of("reaction_added") == [("reaction_added", "older", "😀")]
    await client.close()


@pytest.mark.asyncio
async def test_reaction_removed_event(make_client, recorder, backend):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    await backend.push(insert(message_row("m-1")))
    reaction = {"id": "r-1", "message_id": "m-1", "user_id": OTHER_USER_ID, "emoji": "❤️"}
    await backend.push(RowChange("message_reactions", RowEventType.INSERT, new=reaction))

    await backend.push(RowChange("message_reactions", RowEventType.DELETE, old={"id": "r-1"}))

    assert recorder.of("reaction_removed") == [("reaction_removed", "m-1", "❤️")]
    await client.close()


@pytest.mark.asyncio
async def test_mark_read_writes_each_receipt_once(make_client, recorder, backend, store):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    await backend.push(insert(message_row("m-1")))
    await backend.push(insert(message_row("m-2")))
    await client.send_message("mine")

    assert await client.mark_read() == 2
    assert await client.mark_read() == 0

    assert len(store.rows("read_receipts")) == 2
    assert sorted(recorder.of("receipt")) == [
        ("receipt", "m-1", USER_ID), ("receipt", "m-2", USER_ID),
    ]

    await backend.push(RowChange("read_receipts", RowEventType.INSERT, new=store.rows("read_receipts")[0]))
    assert len(recorder.of("receipt")) == 2
    await client.close()


@pytest.mark.asyncio
async def test_refresh_and_load_more_page_backwards(make_client, recorder, store, backend):
    for i in range(5):
        store.seed("messages", **message_row(f"m-{i}", at=T0.replace(minute=i)))
    store.seed("message_reactions", id="r-1", message_id="m-4", user_id=OTHER_USER_ID, emoji="👍")
    client = make_client(page_size=2)
    await client.subscribe(CHAT_ID, recorder.handlers())

    page = await client.refresh()
    assert [m.id for m in page] == ["m-3", "m-4"]
    assert client.has_more is True
    assert len(client.reactions("m-4")) == 1

    older = await client.load_more()
    assert [m.id for m in older] == ["m-1", "m-2"]

    oldest = await client.load_more()
    assert [m.id for m in oldest] == ["m-0"]
    assert client.has_more is False
    assert [m.id for m in client.messages] == ["m-0", "m-1", "m-2", "m-3", "m-4"]
    assert await client.load_more() == []
    await client.close()


@pytest.mark.asyncio
async def test_refresh_keeps_unconfirmed_messages(make_client, recorder, network):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    network.set_online(False)
    pending = await client.send_message("still sending")

    await client.refresh()

    assert [m.id for m in client.messages] == [pending.temp_id]
    await client.close()


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent(make_client, recorder, backend):
    client = make_client()
    await client.subscribe(CHAT_ID, recorder.handlers())
    channel = backend.latest
    channel.fail_unsubscribe = True

    await client.unsubscribe()
    await client.unsubscribe()

    assert channel.unsubscribed is True
    assert client.is_connected is False
    await client.close()


@pytest.mark.asyncio
async def test_broken_handler_does_not_break_stream(make_client, recorder, backend):
    client = make_client()
    handlers = recorder.handlers()

    def _explode(message):
        raise RuntimeError("ui bug")

    handlers.on_new_message = _explode
    await client.subscribe(CHAT_ID, handlers)

    await backend.push(insert(message_row("m-1")))

    assert client.get_message("m-1") is not None
    await client.close()
