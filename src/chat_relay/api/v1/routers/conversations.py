from __future__ import annotations

from fastapi import APIRouter, Query

from chat_relay.api.deps import BroadcasterDep, CurrentPrincipal, UoWDep
from chat_relay.api.v1.schemas.common import PaginatedResponse, StatusResponse
from chat_relay.api.v1.schemas.conversation import (
    ConversationDetailResponse,
    ConversationResponse,
    CreateConversationRequest,
    ParticipantIn,
    ParticipantResponse,
)
from chat_relay.application.dto.conversation import CreateConversationDTO
from chat_relay.infrastructure.db.repositories._cursor import encode_cursor
from chat_relay.infrastructure.ws.protocol import UserJoined, UserLeft
from chat_relay.services import conversation_service

router = APIRouter(prefix="/api/v1/chat/conversations", tags=["conversations"])


@router.post("", response_model=ConversationResponse, status_code=201)
async def create_conversation(
    body: CreateConversationRequest,
    principal: CurrentPrincipal,
    uow: UoWDep,
) -> ConversationResponse:
    dto = CreateConversationDTO(
        title=body.title,
        type=body.type,
        description=body.description,
        participants=[p.to_ref() for p in body.participants],
    )
    conv = await conversation_service.create_conversation(principal, dto, uow)
    return ConversationResponse.model_validate(conv, from_attributes=True)


@router.get("", response_model=PaginatedResponse[ConversationResponse])
async def list_conversations(
    principal: CurrentPrincipal,
    uow: UoWDep,
    cursor: str | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
) -> PaginatedResponse[ConversationResponse]:
    convs = await conversation_service.list_user_conversations(
        principal, cursor, limit, uow,
    )
    next_cursor = None
    if len(convs) == limit:
        last = convs[-1]
        next_cursor = encode_cursor(last.last_message_at or last.created_at, last.id)
    return PaginatedResponse[ConversationResponse](
        items=[ConversationResponse.model_validate(c, from_attributes=True) for c in convs],
        next_cursor=next_cursor,
    )


@router.get("/{conversation_id}", response_model=ConversationDetailResponse)
async def get_conversation(
    conversation_id: str,
    principal: CurrentPrincipal,
    uow: UoWDep,
) -> ConversationDetailResponse:
    conv, participants = await conversation_service.get_conversation(
        conversation_id, principal, uow,
    )
    return ConversationDetailResponse(
        **ConversationResponse.model_validate(conv, from_attributes=True).model_dump(),
        participants=[
            ParticipantResponse.model_validate(p, from_attributes=True) for p in participants
        ],
    )


@router.post(
    "/{conversation_id}/participants",
    response_model=ParticipantResponse,
    status_code=201,
)
async def add_participant(
    conversation_id: str,
    body: ParticipantIn,
    principal: CurrentPrincipal,
    uow: UoWDep,
    broadcaster: BroadcasterDep,
) -> ParticipantResponse:
    participant = await conversation_service.add_participant(
        conversation_id, principal, body.to_ref(), uow,
    )
    await broadcaster.publish(
        conversation_id,
        UserJoined(
            conversation_id=conversation_id,
            user_id=participant.user_id,
            username=participant.username,
        ),
    )
    return ParticipantResponse.model_validate(participant, from_attributes=True)


@router.post("/{conversation_id}/leave", response_model=StatusResponse)
async def leave_conversation(
    conversation_id: str,
    principal: CurrentPrincipal,
    uow: UoWDep,
    broadcaster: BroadcasterDep,
) -> StatusResponse:
    await conversation_service.leave_conversation(conversation_id, principal, uow)
    await broadcaster.publish(
        conversation_id,
        UserLeft(conversation_id=conversation_id, user_id=principal.user_id),
    )
    return StatusResponse()
