from __future__ import annotations

import pytest

from chat_relay.infrastructure.ws.hub import RealtimeHub
from chat_relay.infrastructure.ws.manager import Connection
from tests.conftest import FakeParticipantReader, FakeSocket, make_participant


@pytest.fixture
def hub(clock) -> RealtimeHub:
    return RealtimeHub.create(typing_window=3.0, clock=clock)


async def _joined(hub, principal, members):
    socket = FakeSocket()
    connection = Connection(socket.send_text)
    await hub.registry.register(connection, principal)
    await hub.registry.join(connection, "c1", members)
    return connection, socket


@pytest.fixture
def members(alice, bob) -> FakeParticipantReader:
    return FakeParticipantReader([make_participant("c1", alice), make_participant("c1", bob)])


def _typing(socket: FakeSocket) -> list[bool]:
    return [f["isTyping"] for f in socket.frames("user_typing")]


@pytest.mark.asyncio
async def test_start_broadcasts_once_and_skips_typist(hub, members, alice, bob):
    a1, sock_a = await _joined(hub, alice, members)
    b1, sock_b = await _joined(hub, bob, members)

    assert await hub.typing.start("c1", alice, a1.id) is True
    assert await hub.typing.start("c1", alice, a1.id) is False
    await a1.flushed()
    await b1.flushed()

    assert _typing(sock_b) == [True]
    assert sock_b.frames("user_typing")[0]["username"] == "alice"
    assert _typing(sock_a) == []
    assert hub.typing.is_typing("c1", alice.user_id)
    await hub.registry.shutdown()


@pytest.mark.asyncio
async def test_stop_clears_immediately(hub, members, alice, bob):
    a1, _ = await _joined(hub, alice, members)
    b1, sock_b = await _joined(hub, bob, members)

    await hub.typing.start("c1", alice, a1.id)
    assert await hub.typing.stop("c1", alice.user_id) is True
    assert await hub.typing.stop("c1", alice.user_id) is False
    await b1.flushed()

    assert _typing(sock_b) == [True, False]
    assert hub.typing.typing_users("c1") == []
    await hub.registry.shutdown()


@pytest.mark.asyncio
async def test_expiry_emits_false_exactly_once(hub, members, clock, alice, bob):
    a1, _ = await _joined(hub, alice, members)
    b1, sock_b = await _joined(hub, bob, members)

    await hub.typing.start("c1", alice, a1.id)
    clock.advance(3.1)

    assert not hub.typing.is_typing("c1", alice.user_id)
    assert await hub.typing.sweep() == 1
    assert await hub.typing.sweep() == 0
    assert await hub.typing.stop("c1", alice.user_id) is False
    await b1.flushed()

    assert _typing(sock_b) == [True, False]
    await hub.registry.shutdown()


@pytest.mark.asyncio
async def test_refresh_extends_deadline(hub, members, clock, alice, bob):
    a1, _ = await _joined(hub, alice, members)
    await _joined(hub, bob, members)

    await hub.typing.start("c1", alice, a1.id)
    clock.advance(2.0)
    await hub.typing.start("c1", alice, a1.id)
    clock.advance(2.0)

    assert await hub.typing.sweep() == 0
    assert hub.typing.typing_users("c1") == [alice.user_id]
    await hub.registry.shutdown()


@pytest.mark.asyncio
async def test_lazy_expiry_on_next_activity(hub, members, clock, alice, bob):
    a1, _ = await _joined(hub, alice, members)
    b1, sock_b = await _joined(hub, bob, members)

    await hub.typing.start("c1", alice, a1.id)
    clock.advance(5.0)
    await hub.typing.start("c1", bob, b1.id)
    await b1.flushed()

    assert _typing(sock_b) == [True, False]
    await hub.registry.shutdown()


@pytest.mark.asyncio
async def test_disconnect_clears_typing_state(hub, members, alice, bob):
    a1, _ = await _joined(hub, alice, members)
    b1, sock_b = await _joined(hub, bob, members)

    await hub.typing.start("c1", alice, a1.id)
    await hub.registry.unregister(a1)
    await b1.flushed()

    assert _typing(sock_b) == [True, False]
    assert not hub.typing.is_typing("c1", alice.user_id)
    await hub.registry.shutdown()
