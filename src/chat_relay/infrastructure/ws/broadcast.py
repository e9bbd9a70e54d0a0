"""Conversation fan-out to live connections."""
from __future__ import annotations

import logging
from typing import Any

from chat_relay.application.ports.bus import EventPublisher
from chat_relay.infrastructure.ws.manager import ConnectionRegistry
from chat_relay.infrastructure.ws.protocol import (
    UserLeft,
    WsModel,
    encode_event,
    server_event_from_dict,
)

logger = logging.getLogger(__name__)


class BroadcastRouter:
    """Pushes events to every connection joined to a conversation room.

    Call ``publish`` only after the write that produced the event has been
    committed. With a relay attached, events travel through the relay channel
    and each service instance delivers them to its own rooms via
    ``on_relay_event``.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry
        self._relay: EventPublisher | None = None
        self._channel: str | None = None

    def attach_relay(self, relay: EventPublisher, channel: str) -> None:
        self._relay = relay
        self._channel = channel

    def detach_relay(self) -> None:
        self._relay = None
        self._channel = None

    async def publish(
        self,
        conversation_id: str,
        event: WsModel,
        *,
        exclude_user_id: str | None = None,
    ) -> None:
        if self._relay is not None and self._channel is not None:
            payload: dict[str, Any] = {
                "event_type": getattr(event, "type", "unknown"),
                "conversation_id": conversation_id,
                "exclude_user_id": exclude_user_id,
                "event": event.model_dump(mode="json", by_alias=True),
            }
            try:
                await self._relay.publish(self._channel, payload)
                return
            except Exception:
                logger.exception("Fan-out relay failed for %s, delivering locally", conversation_id)

        await self.deliver_local(conversation_id, event, exclude_user_id=exclude_user_id)

    async def deliver_local(
        self,
        conversation_id: str,
        event: WsModel,
        *,
        exclude_user_id: str | None = None,
    ) -> int:
        """Queue ``event`` for every local room member. Returns how many accepted it."""
        raw = encode_event(event)
        delivered = 0
        for connection in await self._registry.members(conversation_id):
            if exclude_user_id is not None and connection.user_id == exclude_user_id:
                continue
            if self._registry.send_raw(connection, raw):
                delivered += 1
        # Rooms only hold active participants.
        if isinstance(event, UserLeft):
            await self._registry.evict_user(conversation_id, event.user_id)
        return delivered

    async def on_relay_event(self, event_type: str, data: dict[str, Any]) -> None:
        conversation_id = data.get("conversation_id")
        if not conversation_id:
            logger.debug("Relay event %s without conversation_id, dropped", event_type)
            return
        event = server_event_from_dict(data["event"])
        await self.deliver_local(
            conversation_id,
            event,
            exclude_user_id=data.get("exclude_user_id"),
        )
