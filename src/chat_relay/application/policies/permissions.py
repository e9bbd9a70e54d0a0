from __future__ import annotations

from chat_relay.application.dto.principal import Principal
from chat_relay.application.exceptions import (
    ForbiddenError,
    NotFoundError,
    NotOwnerError,
    NotParticipantError,
)
from chat_relay.application.repositories.participant import ParticipantReader
from chat_relay.domain.entities.conversation import Conversation
from chat_relay.domain.entities.message import Message
from chat_relay.domain.entities.participant import Participant
from chat_relay.domain.value_objects.enums import ParticipantRole

_MANAGER_ROLES = frozenset({ParticipantRole.ADMIN, ParticipantRole.MODERATOR})


async def assert_conversation_access(
    principal: Principal,
    conversation: Conversation | None,
    participants: ParticipantReader,
) -> Participant:
    """Raise unless the conversation exists and principal is an active participant."""
    if conversation is None:
        raise NotFoundError("Conversation not found")

    participant = await participants.get(conversation.id, principal.user_id)
    if participant is None or not participant.is_active:
        raise NotParticipantError("Not a participant of this conversation")

    return participant


def assert_manager(participant: Participant) -> None:
    if participant.role not in _MANAGER_ROLES:
        raise ForbiddenError("Admin or moderator role required")


def assert_message_owner(principal: Principal, message: Message | None) -> Message:
    if message is None:
        raise NotFoundError("Message not found")
    if message.author_id != principal.user_id:
        raise NotOwnerError("Only the author can modify this message")
    return message


def can_moderate(participant: Participant | None) -> bool:
    return participant is not None and participant.is_active and participant.role in _MANAGER_ROLES
