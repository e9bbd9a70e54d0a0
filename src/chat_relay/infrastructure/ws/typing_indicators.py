"""Ephemeral per-conversation typing indicators with automatic expiry."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from chat_relay.application.dto.principal import Principal
from chat_relay.application.ports.clock import Clock, SystemClock
from chat_relay.infrastructure.ws.broadcast import BroadcastRouter
from chat_relay.infrastructure.ws.manager import Connection
from chat_relay.infrastructure.ws.protocol import UserTyping

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TypingState:
    username: str
    connection_id: str
    expires_at: float


class TypingAggregator:
    """Tracks who is typing where.

    A state that is not refreshed within ``window_seconds`` is cleared by the
    sweeper (or lazily on the next start/stop) and announced as stopped, so a
    lost ``typing_stop`` never leaves an indicator on forever.
    """

    def __init__(
        self,
        broadcaster: BroadcastRouter,
        *,
        window_seconds: float = 3.0,
        clock: Clock | None = None,
    ) -> None:
        self._broadcaster = broadcaster
        self._window = window_seconds
        self._clock = clock or SystemClock()
        self._states: dict[tuple[str, str], TypingState] = {}
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    def is_typing(self, conversation_id: str, user_id: str) -> bool:
        state = self._states.get((conversation_id, user_id))
        return state is not None and state.expires_at > self._clock.monotonic()

    def typing_users(self, conversation_id: str) -> list[str]:
        now = self._clock.monotonic()
        return [
            user_id
            for (conv_id, user_id), state in self._states.items()
            if conv_id == conversation_id and state.expires_at > now
        ]

    async def start(
        self,
        conversation_id: str,
        principal: Principal,
        connection_id: str,
    ) -> bool:
        """Set or refresh the indicator. Returns True if a start was announced."""
        async with self._lock:
            now = self._clock.monotonic()
            await self._expire_locked(now)
            key = (conversation_id, principal.user_id)
            announce = key not in self._states
            self._states[key] = TypingState(
                username=principal.username,
                connection_id=connection_id,
                expires_at=now + self._window,
            )
            if announce:
                await self._announce(conversation_id, principal.user_id, principal.username, True)
        return announce

    async def stop(self, conversation_id: str, user_id: str) -> bool:
        """Clear the indicator. Returns True if a stop was announced."""
        async with self._lock:
            await self._expire_locked(self._clock.monotonic())
            state = self._states.pop((conversation_id, user_id), None)
            if state is None:
                return False
            await self._announce(conversation_id, user_id, state.username, False)
        return True

    async def sweep(self) -> int:
        async with self._lock:
            return await self._expire_locked(self._clock.monotonic())

    async def clear_connection(self, connection: Connection) -> None:
        """Stop every indicator that ``connection`` started."""
        async with self._lock:
            owned = [
                key for key, state in self._states.items()
                if state.connection_id == connection.id
            ]
            for key in owned:
                state = self._states.pop(key)
                await self._announce(key[0], key[1], state.username, False)

    async def start_sweeper(self, interval: float) -> None:
        self._task = asyncio.create_task(self._run(interval), name="typing-sweeper")
        logger.info("Typing sweeper started (window=%.1fs, interval=%.1fs)", self._window, interval)

    async def stop_sweeper(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Typing sweeper stopped")

    async def _run(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Typing sweep failed")

    async def _expire_locked(self, now: float) -> int:
        expired = [key for key, state in self._states.items() if state.expires_at <= now]
        for key in expired:
            state = self._states.pop(key)
            await self._announce(key[0], key[1], state.username, False)
        return len(expired)

    async def _announce(
        self,
        conversation_id: str,
        user_id: str,
        username: str,
        is_typing: bool,
    ) -> None:
        event = UserTyping(
            conversation_id=conversation_id,
            user_id=user_id,
            username=username,
            is_typing=is_typing,
        )
        await self._broadcaster.publish(conversation_id, event, exclude_user_id=user_id)
