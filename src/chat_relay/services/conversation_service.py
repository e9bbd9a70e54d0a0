from __future__ import annotations

import uuid

from chat_relay.application.dto.conversation import CreateConversationDTO, ParticipantRef
from chat_relay.application.dto.principal import Principal
from chat_relay.application.exceptions import ValidationError
from chat_relay.application.policies.permissions import (
    assert_conversation_access,
    assert_manager,
)
from chat_relay.application.ports.clock import Clock, SystemClock
from chat_relay.application.uow import UnitOfWork
from chat_relay.domain.entities.conversation import Conversation
from chat_relay.domain.entities.participant import Participant
from chat_relay.domain.value_objects.enums import ConversationType, ParticipantRole

_system_clock = SystemClock()


async def create_conversation(
    principal: Principal,
    dto: CreateConversationDTO,
    uow: UnitOfWork,
    *,
    clock: Clock = _system_clock,
) -> Conversation:
    """Create a conversation; the creator joins as admin."""
    title = dto.title.strip()
    if not title:
        raise ValidationError("Conversation title must not be empty")

    others = {ref.user_id: ref for ref in dto.participants if ref.user_id != principal.user_id}
    if dto.type == ConversationType.DIRECT and len(others) != 1:
        raise ValidationError("A direct conversation needs exactly one other participant")

    now = clock.now()
    conversation = Conversation(
        id=str(uuid.uuid4()),
        title=title,
        description=dto.description,
        type=dto.type.value,
        last_message_at=None,
        created_at=now,
        updated_at=now,
    )
    conversation = await uow.conversations_w.create(conversation)

    await uow.participants_w.add(
        Participant(
            conversation_id=conversation.id,
            user_id=principal.user_id,
            username=principal.username,
            role=ParticipantRole.ADMIN.value,
            joined_at=now,
        )
    )
    for ref in others.values():
        await uow.participants_w.add(
            Participant(
                conversation_id=conversation.id,
                user_id=ref.user_id,
                username=ref.username,
                role=ref.role.value,
                joined_at=now,
            )
        )
    await uow.commit()
    return conversation


async def list_user_conversations(
    principal: Principal,
    cursor: str | None,
    limit: int,
    uow: UnitOfWork,
) -> list[Conversation]:
    return await uow.conversations.list_for_user(
        principal.user_id, cursor=cursor, limit=limit,
    )


async def get_conversation(
    conversation_id: str,
    principal: Principal,
    uow: UnitOfWork,
) -> tuple[Conversation, list[Participant]]:
    conversation = await uow.conversations.get_by_id(conversation_id)
    await assert_conversation_access(principal, conversation, uow.participants)
    participants = await uow.participants.list_participants(conversation_id)
    return conversation, participants


async def add_participant(
    conversation_id: str,
    principal: Principal,
    ref: ParticipantRef,
    uow: UnitOfWork,
    *,
    clock: Clock = _system_clock,
) -> Participant:
    """Add (or re-activate) a participant. Requires admin or moderator role."""
    conversation = await uow.conversations.get_by_id(conversation_id)
    actor = await assert_conversation_access(principal, conversation, uow.participants)
    assert_manager(actor)
    if conversation.type == ConversationType.DIRECT.value:
        raise ValidationError("Cannot add participants to a direct conversation")
    if ref.role == ParticipantRole.ADMIN and actor.role != ParticipantRole.ADMIN.value:
        raise ValidationError("Only an admin can add another admin")

    participant = Participant(
        conversation_id=conversation_id,
        user_id=ref.user_id,
        username=ref.username,
        role=ref.role.value,
        joined_at=clock.now(),
    )
    await uow.participants_w.add(participant)
    await uow.commit()
    return participant


async def leave_conversation(
    conversation_id: str,
    principal: Principal,
    uow: UnitOfWork,
    *,
    clock: Clock = _system_clock,
) -> None:
    conversation = await uow.conversations.get_by_id(conversation_id)
    await assert_conversation_access(principal, conversation, uow.participants)
    await uow.participants_w.mark_left(conversation_id, principal.user_id, clock.now())
    await uow.commit()
