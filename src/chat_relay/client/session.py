"""WebSocket client that keeps conversation timelines in sync with the server."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from chat_relay.application.exceptions import ValidationError
from chat_relay.application.ports.clock import Clock
from chat_relay.client.timeline import (
    DEFAULT_SEND_TIMEOUT,
    ConversationTimeline,
    TimelineEntry,
)
from chat_relay.domain.value_objects.enums import MessageType
from chat_relay.infrastructure.ws.protocol import (
    Connected,
    CreateMessage,
    ErrorEvent,
    JoinConversation,
    JoinedConversation,
    LeaveConversation,
    LeftConversation,
    MessageDeleted,
    MessagePayload,
    MessageUpdated,
    NewMessage,
    Ping,
    ServerEvent,
    TypingStart,
    TypingStop,
    UserTyping,
    WsModel,
    decode_server_event,
    encode_event,
)

logger = logging.getLogger(__name__)

INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 10.0

Connector = Callable[[str], Any]
EventListener = Callable[[ServerEvent], Awaitable[None]]


def next_backoff(delay: float) -> float:
    return min(delay * 2, MAX_BACKOFF_SECONDS)


class ChatClient:
    """Live chat session for one user.

    ``run()`` keeps a connection open, reconnecting with exponential backoff
    and rejoining every conversation that was joined before the drop. Messages
    that failed because the connection was gone are resent once it is back.
    Sends never wait for delivery: the timeline shows them as pending until the
    server's broadcast arrives.
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        user_id: str,
        username: str = "",
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        heartbeat_interval: float = 25.0,
        sweep_interval: float = 1.0,
        clock: Clock | None = None,
        connector: Connector = connect,
        listener: EventListener | None = None,
    ) -> None:
        self._url = f"{url}?{urlencode({'token': token})}"
        self.user_id = user_id
        self.username = username
        self._send_timeout = send_timeout
        self._heartbeat_interval = heartbeat_interval
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._connector = connector
        self._listener = listener

        self._ws: ClientConnection | None = None
        self._timelines: dict[str, ConversationTimeline] = {}
        self._rooms: set[str] = set()
        self.typing: dict[str, dict[str, str]] = {}
        self._closing = False
        self._tasks: set[asyncio.Task[Any]] = set()
        # (conversation_id, local_id) of sends that failed for lack of a connection
        self._lost: list[tuple[str, str]] = []
        self.connected = asyncio.Event()

    def timeline(self, conversation_id: str) -> ConversationTimeline:
        timeline = self._timelines.get(conversation_id)
        if timeline is None:
            timeline = ConversationTimeline(
                conversation_id,
                self.user_id,
                username=self.username,
                send_timeout=self._send_timeout,
                clock=self._clock,
            )
            self._timelines[conversation_id] = timeline
        return timeline

    @property
    def rooms(self) -> frozenset[str]:
        return frozenset(self._rooms)

    # Connection lifecycle

    async def run(self) -> None:
        delay = INITIAL_BACKOFF_SECONDS
        while not self._closing:
            try:
                async with self._connector(self._url) as ws:
                    delay = INITIAL_BACKOFF_SECONDS
                    await self._serve(ws)
            except (OSError, WebSocketException) as exc:
                logger.warning("Chat connection lost: %s", exc)
            finally:
                self._on_disconnect()
            if self._closing:
                break
            logger.info("Reconnecting in %.1fs", delay)
            await asyncio.sleep(delay)
            delay = next_backoff(delay)

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()

    async def _serve(self, ws: ClientConnection) -> None:
        self._ws = ws
        self.connected.set()
        for conversation_id in sorted(self._rooms):
            await self._send(JoinConversation(conversation_id=conversation_id))
        await self._resend_lost()

        background = [
            asyncio.create_task(self._heartbeat(), name="chat-client-heartbeat"),
            asyncio.create_task(self._sweep(), name="chat-client-sweep"),
        ]
        try:
            async for raw in ws:
                await self.handle_raw(raw)
        except ConnectionClosed:
            logger.info("Chat connection closed by server")
        finally:
            for task in background:
                task.cancel()

    def _on_disconnect(self) -> None:
        self._ws = None
        self.connected.clear()
        self.typing.clear()
        for timeline in self._timelines.values():
            failed = timeline.fail_in_flight()
            self._lost.extend(
                (timeline.conversation_id, entry.local_id) for entry in failed if entry.local_id
            )
            if failed:
                logger.info(
                    "Connection lost with %d message(s) in flight for %s",
                    len(failed), timeline.conversation_id,
                )

    async def _resend_lost(self) -> None:
        """Retry, in send order, every message that failed while disconnected."""
        lost, self._lost = self._lost, []
        for conversation_id, local_id in lost:
            entry = self.timeline(conversation_id).get(local_id)
            if entry is None or not entry.can_retry:
                continue
            self.timeline(conversation_id).begin_retry(local_id)
            event = self._create_event(conversation_id, entry)
            await self._deliver(conversation_id, local_id, event)

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            await self._send(Ping())

    async def _sweep(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.expire_overdue()

    def expire_overdue(self) -> list[TimelineEntry]:
        expired: list[TimelineEntry] = []
        for timeline in self._timelines.values():
            expired.extend(timeline.expire())
        return expired

    # Outbound

    async def join(self, conversation_id: str) -> None:
        self._rooms.add(conversation_id)
        await self._send(JoinConversation(conversation_id=conversation_id))

    async def leave(self, conversation_id: str) -> None:
        self._rooms.discard(conversation_id)
        self.typing.pop(conversation_id, None)
        await self._send(LeaveConversation(conversation_id=conversation_id))

    async def start_typing(self, conversation_id: str) -> None:
        await self._send(TypingStart(conversation_id=conversation_id))

    async def stop_typing(self, conversation_id: str) -> None:
        await self._send(TypingStop(conversation_id=conversation_id))

    def send_message(
        self,
        conversation_id: str,
        content: str,
        *,
        message_type: MessageType = MessageType.TEXT,
        reply_to_id: str | None = None,
    ) -> TimelineEntry:
        """Show the message as pending right away and dispatch it in the background."""
        if not content.strip():
            raise ValidationError("Message content must not be empty")
        entry = self.timeline(conversation_id).add_pending(
            content, intent_type=message_type, reply_to_id=reply_to_id,
        )
        self._dispatch(conversation_id, entry)
        return entry

    def retry(self, conversation_id: str, local_id: str) -> TimelineEntry:
        entry = self.timeline(conversation_id).begin_retry(local_id)
        self._dispatch(conversation_id, entry)
        return entry

    def _dispatch(self, conversation_id: str, entry: TimelineEntry) -> None:
        assert entry.local_id is not None
        event = self._create_event(conversation_id, entry)
        task = asyncio.create_task(self._deliver(conversation_id, entry.local_id, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    def _create_event(conversation_id: str, entry: TimelineEntry) -> CreateMessage:
        return CreateMessage(
            conversation_id=conversation_id,
            content=entry.content,
            reply_to_id=entry.reply_to_id,
            message_type=entry.intent_type,
            client_msg_id=entry.local_id,
        )

    async def _deliver(self, conversation_id: str, local_id: str, event: CreateMessage) -> None:
        if await self._send(event):
            return
        if self.timeline(conversation_id).mark_failed(local_id):
            self._lost.append((conversation_id, local_id))

    async def _send(self, event: WsModel) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(encode_event(event))
        except (OSError, WebSocketException):
            logger.warning("Chat send failed", exc_info=True)
            return False
        return True

    # Inbound

    async def handle_raw(self, raw: str | bytes) -> ServerEvent | None:
        try:
            event = decode_server_event(raw)
        except ValidationError:
            logger.warning("Ignoring malformed server frame")
            return None
        self.apply(event)
        if self._listener is not None:
            await self._listener(event)
        return event

    def apply(self, event: ServerEvent) -> None:
        match event:
            case NewMessage(conversation_id=conversation_id, message=message):
                self.timeline(conversation_id).apply_message(message)
                self.typing.get(conversation_id, {}).pop(message.author_id, None)
            case MessageUpdated(conversation_id=conversation_id, message=message):
                self.timeline(conversation_id).apply_update(message)
            case MessageDeleted(conversation_id=conversation_id, message_id=message_id):
                self.timeline(conversation_id).apply_delete(message_id)
            case ErrorEvent(conversation_id=str() as conversation_id, client_msg_id=str() as local_id):
                logger.info("Send of %s rejected: %s", local_id, event.error)
                self.timeline(conversation_id).reject(local_id)
            case ErrorEvent():
                logger.warning("Server error %s: %s", event.code, event.error)
            case UserTyping(conversation_id=conversation_id, user_id=user_id):
                typists = self.typing.setdefault(conversation_id, {})
                if event.is_typing:
                    typists[user_id] = event.username
                else:
                    typists.pop(user_id, None)
            case Connected(user_id=user_id):
                if user_id != self.user_id:
                    logger.warning("Server identifies this session as %s, not %s", user_id, self.user_id)
            case JoinedConversation(conversation_id=conversation_id):
                self._rooms.add(conversation_id)
            case LeftConversation(conversation_id=conversation_id):
                self._rooms.discard(conversation_id)
            case _:
                pass

    def load_history(self, conversation_id: str, messages: list[MessagePayload]) -> int:
        return self.timeline(conversation_id).load_history(messages)
