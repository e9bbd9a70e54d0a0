"""In-process WebSocket connection registry and conversation rooms."""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable

from chat_relay.application.dto.principal import Principal
from chat_relay.application.exceptions import (
    DeliveryFailure,
    NotParticipantError,
    UnauthenticatedError,
)
from chat_relay.application.repositories.participant import ParticipantReader
from chat_relay.infrastructure.ws.protocol import WsModel, encode_event

logger = logging.getLogger(__name__)

SendText = Callable[[str], Awaitable[None]]
CleanupHook = Callable[["Connection"], Awaitable[None]]

_CLOSE = object()


class Connection:
    """One live duplex connection.

    Outbound frames go through a bounded queue drained by a single writer task,
    so a slow socket never blocks whoever is publishing to it.
    """

    def __init__(self, send_text: SendText, *, queue_size: int = 256) -> None:
        self.id = uuid.uuid4().hex
        self.principal: Principal | None = None
        self.rooms: set[str] = set()
        self._send_text = send_text
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        self._closed_event = asyncio.Event()

    @property
    def user_id(self) -> str | None:
        return self.principal.user_id if self.principal else None

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, raw: str) -> bool:
        """Queue a frame. Returns False when closed or backed up."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(raw)
        except asyncio.QueueFull:
            return False
        return True

    async def run_writer(self, on_failure: CleanupHook) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _CLOSE:
                    return
                await self._send_text(item)  # type: ignore[arg-type]
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failure = DeliveryFailure(f"Send to connection {self.id} failed: {exc!r}")
                logger.warning("WS %s: %s", failure.code, failure.detail)
                await on_failure(self)
                return
            finally:
                self._queue.task_done()

    async def flushed(self) -> None:
        """Wait until every queued frame reached the socket. Returns early on close."""
        if self._closed:
            return
        drained = asyncio.ensure_future(self._queue.join())
        closed = asyncio.ensure_future(self._closed_event.wait())
        try:
            await asyncio.wait({drained, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            drained.cancel()
            closed.cancel()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._closed_event.set()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._queue.put_nowait(_CLOSE)


class ConnectionRegistry:
    """Tracks live connections per user and per conversation room.

    Membership mutations and the member snapshots taken for publishing are
    serialized by one lock.
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._by_user: dict[str, set[str]] = {}
        self._rooms: dict[str, set[str]] = {}
        self._writers: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()
        self._cleanup_hooks: list[CleanupHook] = []
        self._pending_cleanup: set[asyncio.Task[None]] = set()
        # bumped on every eviction so a join that raced one can tell
        self._evictions: dict[tuple[str, str], int] = {}

    def add_cleanup_hook(self, hook: CleanupHook) -> None:
        """Run ``hook`` for every connection that gets unregistered."""
        self._cleanup_hooks.append(hook)

    async def register(self, connection: Connection, principal: Principal | None) -> None:
        if principal is None:
            raise UnauthenticatedError("Authentication required")
        connection.principal = principal
        async with self._lock:
            self._connections[connection.id] = connection
            self._by_user.setdefault(principal.user_id, set()).add(connection.id)
            self._writers[connection.id] = asyncio.create_task(
                connection.run_writer(self.unregister),
                name=f"ws-writer-{connection.id}",
            )
        logger.debug(
            "WS registered: %s user=%s (total=%d)",
            connection.id, principal.user_id, len(self._connections),
        )

    async def join(
        self,
        connection: Connection,
        conversation_id: str,
        participants: ParticipantReader,
    ) -> None:
        if connection.principal is None:
            raise UnauthenticatedError("Authentication required")
        key = (conversation_id, connection.principal.user_id)
        evictions = self._evictions.get(key, 0)
        is_member = await participants.is_active_participant(
            conversation_id, connection.principal.user_id,
        )
        if not is_member:
            raise NotParticipantError("Not a participant of this conversation")

        async with self._lock:
            if connection.id not in self._connections:
                raise UnauthenticatedError("Connection is not registered")
            if self._evictions.get(key, 0) != evictions:
                raise NotParticipantError("Not a participant of this conversation")
            self._rooms.setdefault(conversation_id, set()).add(connection.id)
            connection.rooms.add(conversation_id)
        logger.debug("WS %s joined room %s", connection.id, conversation_id)

    async def leave(self, connection: Connection, conversation_id: str) -> bool:
        async with self._lock:
            return self._remove_from_room_locked(connection, conversation_id)

    async def evict_user(self, conversation_id: str, user_id: str) -> list[Connection]:
        """Drop all of a user's connections from one room."""
        async with self._lock:
            key = (conversation_id, user_id)
            self._evictions[key] = self._evictions.get(key, 0) + 1
            evicted = [
                self._connections[cid]
                for cid in self._by_user.get(user_id, set())
                if cid in self._rooms.get(conversation_id, set())
            ]
            for connection in evicted:
                self._remove_from_room_locked(connection, conversation_id)
        return evicted

    async def unregister(self, connection: Connection) -> None:
        """Remove a connection everywhere. Safe to call more than once."""
        async with self._lock:
            if self._connections.pop(connection.id, None) is None:
                return
            for conversation_id in list(connection.rooms):
                self._remove_from_room_locked(connection, conversation_id)
            user_conns = self._by_user.get(connection.user_id or "")
            if user_conns is not None:
                user_conns.discard(connection.id)
                if not user_conns:
                    del self._by_user[connection.user_id or ""]
            writer = self._writers.pop(connection.id, None)

        connection.close()
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()

        for hook in self._cleanup_hooks:
            try:
                await hook(connection)
            except Exception:
                logger.exception("WS cleanup hook failed for %s", connection.id)
        logger.debug("WS unregistered: %s (total=%d)", connection.id, len(self._connections))

    async def members(self, conversation_id: str) -> list[Connection]:
        async with self._lock:
            return [
                self._connections[cid]
                for cid in self._rooms.get(conversation_id, set())
                if cid in self._connections
            ]

    def connections_for_user(self, user_id: str) -> list[Connection]:
        return [self._connections[cid] for cid in self._by_user.get(user_id, set())]

    def room_size(self, conversation_id: str) -> int:
        return len(self._rooms.get(conversation_id, set()))

    def __len__(self) -> int:
        return len(self._connections)

    def send(self, connection: Connection, event: WsModel) -> bool:
        return self.send_raw(connection, encode_event(event))

    def send_raw(self, connection: Connection, raw: str) -> bool:
        """Queue a frame; a connection that cannot take it is scheduled for cleanup."""
        if connection.offer(raw):
            return True
        if connection.id in self._connections:
            failure = DeliveryFailure(f"Connection {connection.id} cannot take more frames")
            logger.warning("WS %s: %s, scheduling unregister", failure.code, failure.detail)
            task = asyncio.create_task(self.unregister(connection))
            self._pending_cleanup.add(task)
            task.add_done_callback(self._pending_cleanup.discard)
        return False

    async def shutdown(self) -> None:
        for connection in list(self._connections.values()):
            await self.unregister(connection)

    def _remove_from_room_locked(self, connection: Connection, conversation_id: str) -> bool:
        connection.rooms.discard(conversation_id)
        room = self._rooms.get(conversation_id)
        if room is None or connection.id not in room:
            return False
        room.discard(connection.id)
        if not room:
            del self._rooms[conversation_id]
        return True
