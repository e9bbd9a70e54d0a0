from __future__ import annotations

from typing import Any

import pytest

from chat_relay.infrastructure.bus.serializer import deserialize_event, serialize_event
from chat_relay.infrastructure.ws.hub import RealtimeHub
from chat_relay.infrastructure.ws.manager import Connection
from chat_relay.infrastructure.ws.protocol import NewMessage, UserLeft, UserTyping
from tests.conftest import (
    FakeParticipantReader,
    FakeSocket,
    make_message,
    make_participant,
)

CHANNEL = "chat:events"


class RecordingPublisher:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, channel: str, payload: dict[str, Any]) -> None:
        self.published.append((channel, payload))


class BrokenPublisher:
    def __init__(self) -> None:
        self.attempts = 0

    async def publish(self, channel: str, payload: dict[str, Any]) -> None:
        self.attempts += 1
        raise ConnectionError("redis is down")


@pytest.fixture
def hub() -> RealtimeHub:
    return RealtimeHub.create(queue_size=16)


@pytest.fixture
def members(alice, bob) -> FakeParticipantReader:
    return FakeParticipantReader(
        [make_participant("c1", alice), make_participant("c1", bob)],
    )


async def _joined(hub: RealtimeHub, principal, members) -> tuple[Connection, FakeSocket]:
    socket = FakeSocket()
    connection = Connection(socket.send_text, queue_size=hub.queue_size)
    await hub.registry.register(connection, principal)
    await hub.registry.join(connection, "c1", members)
    return connection, socket


@pytest.mark.asyncio
async def test_publish_goes_through_attached_relay_only(hub, members, alice):
    connection, socket = await _joined(hub, alice, members)
    relay = RecordingPublisher()
    hub.broadcaster.attach_relay(relay, CHANNEL)

    message = make_message("c1", alice)
    await hub.broadcaster.publish("c1", NewMessage.from_entity(message), exclude_user_id="u-x")
    await connection.flushed()

    assert socket.sent == []
    assert len(relay.published) == 1
    channel, payload = relay.published[0]
    assert channel == CHANNEL
    assert payload["event_type"] == "new_message"
    assert payload["conversation_id"] == "c1"
    assert payload["exclude_user_id"] == "u-x"
    assert payload["event"]["message"]["id"] == message.id
    await hub.registry.shutdown()


@pytest.mark.asyncio
async def test_relay_failure_falls_back_to_local_delivery(hub, members, alice, bob):
    a1, sock_a1 = await _joined(hub, alice, members)
    b1, sock_b1 = await _joined(hub, bob, members)
    relay = BrokenPublisher()
    hub.broadcaster.attach_relay(relay, CHANNEL)

    await hub.broadcaster.publish("c1", NewMessage.from_entity(make_message("c1", alice)))
    await a1.flushed()
    await b1.flushed()

    assert relay.attempts == 1
    assert len(sock_a1.frames("new_message")) == 1
    assert len(sock_b1.frames("new_message")) == 1
    await hub.registry.shutdown()


@pytest.mark.asyncio
async def test_detached_relay_delivers_locally(hub, members, alice):
    connection, socket = await _joined(hub, alice, members)
    relay = RecordingPublisher()
    hub.broadcaster.attach_relay(relay, CHANNEL)
    hub.broadcaster.detach_relay()

    await hub.broadcaster.publish("c1", NewMessage.from_entity(make_message("c1", alice)))
    await connection.flushed()

    assert relay.published == []
    assert len(socket.frames("new_message")) == 1
    await hub.registry.shutdown()


@pytest.mark.asyncio
async def test_relayed_event_is_delivered_on_the_receiving_instance(members, alice, bob):
    sender = RealtimeHub.create(queue_size=16)
    receiver = RealtimeHub.create(queue_size=16)
    relay = RecordingPublisher()
    sender.broadcaster.attach_relay(relay, CHANNEL)
    a1, sock_a1 = await _joined(receiver, alice, members)
    b1, sock_b1 = await _joined(receiver, bob, members)

    typing = UserTyping(conversation_id="c1", user_id=bob.user_id, username="bob", is_typing=True)
    await sender.broadcaster.publish("c1", typing, exclude_user_id=bob.user_id)

    # what the subscriber hands over after a trip through the channel
    _, payload = relay.published[0]
    event_type, data = deserialize_event(serialize_event(payload["event_type"], payload))
    await receiver.broadcaster.on_relay_event(event_type, data)
    await a1.flushed()
    await b1.flushed()

    frames = sock_a1.frames("user_typing")
    assert len(frames) == 1
    assert frames[0]["userId"] == bob.user_id
    assert frames[0]["isTyping"] is True
    assert sock_b1.frames("user_typing") == []
    await receiver.registry.shutdown()


@pytest.mark.asyncio
async def test_relayed_user_left_evicts_on_the_receiving_instance(members, alice, bob):
    receiver = RealtimeHub.create(queue_size=16)
    a1, sock_a1 = await _joined(receiver, alice, members)
    b1, _ = await _joined(receiver, bob, members)

    left = UserLeft(conversation_id="c1", user_id=alice.user_id)
    data = {
        "conversation_id": "c1",
        "exclude_user_id": None,
        "event": left.model_dump(mode="json", by_alias=True),
    }
    await receiver.broadcaster.on_relay_event("user_left", data)
    await a1.flushed()

    assert len(sock_a1.frames("user_left")) == 1
    assert "c1" not in a1.rooms
    assert receiver.registry.room_size("c1") == 1
    assert "c1" in b1.rooms
    await receiver.registry.shutdown()


@pytest.mark.asyncio
async def test_relayed_event_without_conversation_is_dropped(hub, members, alice):
    connection, socket = await _joined(hub, alice, members)

    await hub.broadcaster.on_relay_event("new_message", {"event": {}})
    await connection.flushed()

    assert socket.sent == []
    await hub.registry.shutdown()
