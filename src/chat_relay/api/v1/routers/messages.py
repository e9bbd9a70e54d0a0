from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query

from chat_relay.api.deps import BroadcasterDep, CurrentPrincipal, UoWDep
from chat_relay.api.v1.schemas.message import (
    EditMessageRequest,
    MessageResponse,
    SendMessageRequest,
)
from chat_relay.application.dto.message import CreateMessageDTO, MessagePageDTO
from chat_relay.config import settings
from chat_relay.infrastructure.ws.protocol import MessageDeleted, MessageUpdated, NewMessage
from chat_relay.services import message_service

router = APIRouter(prefix="/api/v1/chat", tags=["messages"])


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=list[MessageResponse],
)
async def list_messages(
    conversation_id: str,
    principal: CurrentPrincipal,
    uow: UoWDep,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    before: datetime | None = Query(None),
    after: datetime | None = Query(None),
) -> list[MessageResponse]:
    page = MessagePageDTO(limit=limit, offset=offset, before=before, after=after)
    messages = await message_service.list_messages(conversation_id, principal, page, uow)
    return [MessageResponse.model_validate(m, from_attributes=True) for m in messages]


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=201,
)
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    principal: CurrentPrincipal,
    uow: UoWDep,
    broadcaster: BroadcasterDep,
) -> MessageResponse:
    dto = CreateMessageDTO(
        conversation_id=conversation_id,
        content=body.content,
        type=body.type,
        reply_to_id=body.reply_to_id,
    )
    msg = await message_service.create_message(
        principal, dto, uow, max_length=settings.MESSAGE_MAX_LENGTH,
    )
    await broadcaster.publish(conversation_id, NewMessage.from_entity(msg))
    return MessageResponse.model_validate(msg, from_attributes=True)


@router.patch("/messages/{message_id}", response_model=MessageResponse)
async def edit_message(
    message_id: str,
    body: EditMessageRequest,
    principal: CurrentPrincipal,
    uow: UoWDep,
    broadcaster: BroadcasterDep,
) -> MessageResponse:
    msg = await message_service.update_message(
        message_id, principal, body.content, uow, max_length=settings.MESSAGE_MAX_LENGTH,
    )
    await broadcaster.publish(msg.conversation_id, MessageUpdated.from_entity(msg))
    return MessageResponse.model_validate(msg, from_attributes=True)


@router.delete("/messages/{message_id}", status_code=204)
async def delete_message(
    message_id: str,
    principal: CurrentPrincipal,
    uow: UoWDep,
    broadcaster: BroadcasterDep,
) -> None:
    msg = await message_service.delete_message(message_id, principal, uow)
    await broadcaster.publish(
        msg.conversation_id,
        MessageDeleted(conversation_id=msg.conversation_id, message_id=msg.id),
    )
