from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from chat_relay.api.deps import UoWFactory, get_hub, get_uow_factory, get_verifier
from chat_relay.application.dto.message import CreateMessageDTO
from chat_relay.application.dto.principal import Principal
from chat_relay.application.exceptions import AppError, NotParticipantError, ValidationError
from chat_relay.application.ports.auth import TokenVerifier
from chat_relay.config import settings
from chat_relay.infrastructure.ws.hub import RealtimeHub
from chat_relay.infrastructure.ws.manager import Connection
from chat_relay.infrastructure.ws.protocol import (
    ClientEvent,
    Connected,
    CreateMessage,
    ErrorEvent,
    JoinConversation,
    JoinedConversation,
    LeaveConversation,
    LeftConversation,
    NewMessage,
    Ping,
    Pong,
    TypingStart,
    TypingStop,
    decode_client_event,
)
from chat_relay.services import message_service

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])

AUTH_FAILED_CLOSE_CODE = 4001


async def _authenticate(verifier: TokenVerifier, token: str) -> Principal | None:
    if not token:
        return None
    try:
        return await verifier.verify(token)
    except Exception:
        logger.debug("WS auth failed", exc_info=True)
        return None


@router.websocket("/ws/chat")
async def ws_chat(
    websocket: WebSocket,
    hub: Annotated[RealtimeHub, Depends(get_hub)],
    verifier: Annotated[TokenVerifier, Depends(get_verifier)],
    uow_factory: Annotated[UoWFactory, Depends(get_uow_factory)],
    token: str = Query(""),
) -> None:
    principal = await _authenticate(verifier, token)
    if principal is None:
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE, reason="Authentication failed")
        return

    await websocket.accept()
    connection = Connection(websocket.send_text, queue_size=hub.queue_size)
    await hub.registry.register(connection, principal)
    hub.registry.send(
        connection, Connected(user_id=principal.user_id, username=principal.username),
    )

    heartbeat_task = asyncio.create_task(
        _heartbeat(hub, connection), name=f"ws-heartbeat-{connection.id}",
    )
    try:
        await _read_loop(websocket, connection, hub, uow_factory)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("WS error for %s", principal.user_id)
    finally:
        heartbeat_task.cancel()
        await hub.registry.unregister(connection)


async def _heartbeat(hub: RealtimeHub, connection: Connection) -> None:
    interval = settings.WS_HEARTBEAT_SECONDS
    while not connection.closed:
        await asyncio.sleep(interval)
        if not hub.registry.send(connection, Pong()):
            return


async def _read_loop(
    ws: WebSocket,
    connection: Connection,
    hub: RealtimeHub,
    uow_factory: UoWFactory,
) -> None:
    while True:
        raw = await ws.receive_text()
        try:
            event = decode_client_event(raw)
        except ValidationError as exc:
            hub.registry.send(connection, ErrorEvent.from_error(exc))
            continue

        try:
            await _dispatch(event, connection, hub, uow_factory)
        except AppError as exc:
            hub.registry.send(
                connection,
                ErrorEvent.from_error(
                    exc,
                    conversation_id=getattr(event, "conversation_id", None),
                    client_msg_id=getattr(event, "client_msg_id", None),
                ),
            )
        except Exception:
            logger.exception("WS %s failed handling %s", connection.id, event.type)
            hub.registry.send(
                connection,
                ErrorEvent(
                    error="Internal error",
                    code="internal_error",
                    conversation_id=getattr(event, "conversation_id", None),
                    client_msg_id=getattr(event, "client_msg_id", None),
                ),
            )


async def _dispatch(
    event: ClientEvent,
    connection: Connection,
    hub: RealtimeHub,
    uow_factory: UoWFactory,
) -> None:
    principal = connection.principal
    assert principal is not None

    match event:
        case Ping():
            hub.registry.send(connection, Pong())

        case JoinConversation(conversation_id=conversation_id):
            async with uow_factory() as uow:
                await hub.registry.join(connection, conversation_id, uow.participants)
            hub.registry.send(connection, JoinedConversation(conversation_id=conversation_id))

        case LeaveConversation(conversation_id=conversation_id):
            await hub.registry.leave(connection, conversation_id)
            await hub.typing.stop(conversation_id, principal.user_id)
            hub.registry.send(connection, LeftConversation(conversation_id=conversation_id))

        case TypingStart(conversation_id=conversation_id):
            if conversation_id not in connection.rooms:
                raise NotParticipantError("Join the conversation before typing")
            await hub.typing.start(conversation_id, principal, connection.id)

        case TypingStop(conversation_id=conversation_id):
            await hub.typing.stop(conversation_id, principal.user_id)

        case CreateMessage():
            dto = CreateMessageDTO(
                conversation_id=event.conversation_id,
                content=event.content,
                type=event.message_type,
                reply_to_id=event.reply_to_id,
            )
            async with uow_factory() as uow:
                msg = await message_service.create_message(
                    principal, dto, uow, max_length=settings.MESSAGE_MAX_LENGTH,
                )
            await hub.typing.stop(event.conversation_id, principal.user_id)
            await hub.broadcaster.publish(event.conversation_id, NewMessage.from_entity(msg))
