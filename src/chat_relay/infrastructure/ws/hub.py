from __future__ import annotations

from dataclasses import dataclass

from chat_relay.application.ports.clock import Clock
from chat_relay.infrastructure.ws.broadcast import BroadcastRouter
from chat_relay.infrastructure.ws.manager import ConnectionRegistry
from chat_relay.infrastructure.ws.typing_indicators import TypingAggregator


@dataclass(slots=True)
class RealtimeHub:
    """The live-delivery components of one service instance."""

    registry: ConnectionRegistry
    broadcaster: BroadcastRouter
    typing: TypingAggregator
    queue_size: int = 256

    @classmethod
    def create(
        cls,
        *,
        queue_size: int = 256,
        typing_window: float = 3.0,
        clock: Clock | None = None,
    ) -> RealtimeHub:
        registry = ConnectionRegistry()
        broadcaster = BroadcastRouter(registry)
        typing = TypingAggregator(broadcaster, window_seconds=typing_window, clock=clock)
        registry.add_cleanup_hook(typing.clear_connection)
        return cls(registry=registry, broadcaster=broadcaster, typing=typing, queue_size=queue_size)
