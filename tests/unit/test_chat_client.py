from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager

import pytest

from chat_relay.client.session import (
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    ChatClient,
    next_backoff,
)
from chat_relay.client.timeline import EntryState
from chat_relay.infrastructure.ws.protocol import (
    Connected,
    ErrorEvent,
    NewMessage,
    UserTyping,
    encode_event,
)
from tests.conftest import make_message


class FakeServerConnection:
    """Stands in for a websockets client connection."""

    def __init__(self, incoming: list[str], on_exhausted=None) -> None:
        self.sent: list[dict] = []
        self._incoming = incoming
        self._on_exhausted = on_exhausted
        self.closed = False

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for raw in self._incoming:
            await asyncio.sleep(0)
            yield raw
        if self._on_exhausted is not None:
            await self._on_exhausted()


def _sent_types(conn: FakeServerConnection) -> list[str]:
    return [frame["type"] for frame in conn.sent]


@pytest.fixture
def client(alice, clock) -> ChatClient:
    return ChatClient(
        "ws://chat.test/ws/chat",
        "token",
        user_id=alice.user_id,
        username=alice.username,
        clock=clock,
    )


def test_backoff_doubles_up_to_cap():
    delays = [INITIAL_BACKOFF_SECONDS]
    for _ in range(5):
        delays.append(next_backoff(delays[-1]))
    assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]
    assert max(delays) == MAX_BACKOFF_SECONDS


@pytest.mark.asyncio
async def test_send_while_disconnected_fails_entry(client):
    entry = client.send_message("c1", "hello")
    assert entry.state == EntryState.PENDING

    await asyncio.sleep(0)

    assert entry.state == EntryState.FAILED
    assert entry.can_retry


@pytest.mark.asyncio
async def test_send_then_broadcast_confirms(client, alice):
    conn = FakeServerConnection([])
    client._ws = conn

    entry = client.send_message("c1", "hello")
    await asyncio.sleep(0)

    assert conn.sent[0]["type"] == "message_created"
    assert conn.sent[0]["clientMsgId"] == entry.local_id
    assert conn.sent[0]["conversationId"] == "c1"

    event = NewMessage.from_entity(make_message("c1", alice, content="hello"))
    await client.handle_raw(encode_event(event))

    assert entry.state == EntryState.CONFIRMED
    assert len(client.timeline("c1").entries()) == 1


@pytest.mark.asyncio
async def test_error_event_fails_named_entry_and_retry_resends(client):
    conn = FakeServerConnection([])
    client._ws = conn
    entry = client.send_message("c1", "hello")
    await asyncio.sleep(0)

    error = ErrorEvent(
        error="Not a participant", code="forbidden",
        conversation_id="c1", client_msg_id=entry.local_id,
    )
    await client.handle_raw(encode_event(error))
    assert entry.state == EntryState.FAILED

    client.retry("c1", entry.local_id)
    await asyncio.sleep(0)
    assert entry.state == EntryState.PENDING
    assert entry.retry_count == 1
    assert _sent_types(conn) == ["message_created", "message_created"]


@pytest.mark.asyncio
async def test_sweep_times_out_unconfirmed_sends(client, clock):
    client._ws = FakeServerConnection([])
    entry = client.send_message("c1", "hello")
    await asyncio.sleep(0)

    clock.advance(10.5)

    assert client.expire_overdue() == [entry]
    assert entry.state == EntryState.FAILED


@pytest.mark.asyncio
async def test_typing_events_tracked_per_conversation(client):
    start = UserTyping(conversation_id="c1", user_id="u-bob", username="bob", is_typing=True)
    stop = start.model_copy(update={"is_typing": False})

    await client.handle_raw(encode_event(start))
    assert client.typing == {"c1": {"u-bob": "bob"}}

    await client.handle_raw(encode_event(stop))
    assert client.typing == {"c1": {}}


@pytest.mark.asyncio
async def test_malformed_frames_are_ignored(client):
    assert await client.handle_raw("not json") is None
    assert await client.handle_raw(json.dumps({"type": "nope"})) is None


@pytest.mark.asyncio
async def test_run_reconnects_rejoins_and_resends_lost_messages(alice, bob, clock):
    connections: list[FakeServerConnection] = []
    client: ChatClient

    async def _stop() -> None:
        await client.close()

    async def _drop_with_send_in_flight() -> None:
        client.timeline("c1").add_pending("lost")

    scripted = [
        FakeServerConnection(
            [
                encode_event(Connected(user_id=alice.user_id, username=alice.username)),
                encode_event(NewMessage.from_entity(make_message("c1", bob, content="hi"))),
            ],
            on_exhausted=_drop_with_send_in_flight,
        ),
        FakeServerConnection([], on_exhausted=_stop),
    ]

    @asynccontextmanager
    async def connector(url: str):
        assert "token=token" in url
        conn = scripted[len(connections)]
        connections.append(conn)
        yield conn

    client = ChatClient(
        "ws://chat.test/ws/chat",
        "token",
        user_id=alice.user_id,
        username=alice.username,
        clock=clock,
        connector=connector,
    )
    await client.join("c1")

    await asyncio.wait_for(client.run(), timeout=5)

    assert len(connections) == 2
    assert _sent_types(connections[0]) == ["join_conversation"]
    assert _sent_types(connections[1]) == ["join_conversation", "message_created"]
    assert connections[1].sent[0]["conversationId"] == "c1"
    lost = client.timeline("c1").entries()[1]
    assert connections[1].sent[1]["clientMsgId"] == lost.local_id
    assert connections[1].sent[1]["content"] == "lost"
    assert lost.retry_count == 1
    states = [(e.content, e.state) for e in client.timeline("c1").entries()]
    # the resend was still unconfirmed when the second connection closed
    assert states == [("hi", EntryState.CONFIRMED), ("lost", EntryState.FAILED)]
    assert not client.connected.is_set()


@pytest.mark.asyncio
async def test_sends_made_while_disconnected_go_out_on_connect(client):
    offline = client.send_message("c1", "queued")
    await asyncio.sleep(0)
    assert offline.state == EntryState.FAILED

    conn = FakeServerConnection([])
    await client._serve(conn)

    assert _sent_types(conn) == ["message_created"]
    assert conn.sent[0]["clientMsgId"] == offline.local_id
    assert offline.state == EntryState.PENDING
    assert offline.retry_count == 1


@pytest.mark.asyncio
async def test_rejected_sends_are_not_resent_on_connect(client):
    client._ws = FakeServerConnection([])
    entry = client.send_message("c1", "hello")
    await asyncio.sleep(0)
    error = ErrorEvent(
        error="Message content too long", code="invalid_input",
        conversation_id="c1", client_msg_id=entry.local_id,
    )
    await client.handle_raw(encode_event(error))

    conn = FakeServerConnection([])
    await client._serve(conn)

    assert conn.sent == []
    assert entry.state == EntryState.FAILED
    assert entry.retry_count == 0
