from __future__ import annotations

import uuid

from chat_relay.application.dto.message import CreateMessageDTO, MessagePageDTO
from chat_relay.application.dto.principal import Principal
from chat_relay.application.exceptions import (
    ConflictError,
    InvalidReplyTargetError,
    NotFoundError,
    NotOwnerError,
    ValidationError,
)
from chat_relay.application.policies.permissions import (
    assert_conversation_access,
    assert_message_owner,
    can_moderate,
)
from chat_relay.application.ports.clock import Clock, SystemClock
from chat_relay.application.uow import UnitOfWork
from chat_relay.domain.entities.message import Message

DEFAULT_MAX_LENGTH = 2000

_system_clock = SystemClock()


def _clean_content(content: str, max_length: int) -> str:
    cleaned = content.strip()
    if not cleaned:
        raise ValidationError("Message content must not be empty")
    if len(cleaned) > max_length:
        raise ValidationError(f"Message content exceeds {max_length} characters")
    return cleaned


async def create_message(
    principal: Principal,
    dto: CreateMessageDTO,
    uow: UnitOfWork,
    *,
    clock: Clock = _system_clock,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> Message:
    """Persist a message from an active participant and commit.

    ``created_at`` never goes below the conversation's ``last_message_at``,
    so timestamps stay non-decreasing within a conversation.
    """
    content = _clean_content(dto.content, max_length)

    conversation = await uow.conversations.get_by_id(dto.conversation_id)
    await assert_conversation_access(principal, conversation, uow.participants)

    if dto.reply_to_id is not None:
        target = await uow.messages.get_by_id(dto.reply_to_id)
        if (
            target is None
            or target.conversation_id != dto.conversation_id
            or target.is_deleted
        ):
            raise InvalidReplyTargetError("Reply target is not a message of this conversation")

    now = clock.now()
    if conversation.last_message_at is not None and conversation.last_message_at > now:
        now = conversation.last_message_at

    message = Message(
        id=str(uuid.uuid4()),
        conversation_id=dto.conversation_id,
        author_id=principal.user_id,
        author_username=principal.username,
        type=dto.type.value,
        content=content,
        reply_to_id=dto.reply_to_id,
        created_at=now,
    )
    message = await uow.messages_w.create(message)
    await uow.conversations_w.touch_last_message_at(dto.conversation_id, message.created_at)
    await uow.commit()
    return message


async def list_messages(
    conversation_id: str,
    principal: Principal,
    page: MessagePageDTO,
    uow: UnitOfWork,
) -> list[Message]:
    """Return one page of messages in ascending ``created_at`` order."""
    conversation = await uow.conversations.get_by_id(conversation_id)
    await assert_conversation_access(principal, conversation, uow.participants)
    newest_first = await uow.messages.list_messages(conversation_id, page)
    return list(reversed(newest_first))


async def update_message(
    message_id: str,
    principal: Principal,
    content: str,
    uow: UnitOfWork,
    *,
    clock: Clock = _system_clock,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> Message:
    message = assert_message_owner(principal, await uow.messages.get_by_id(message_id))
    if message.is_deleted:
        raise ConflictError("Message has been deleted")
    cleaned = _clean_content(content, max_length)

    updated = await uow.messages_w.update_content(message_id, cleaned, clock.now())
    await uow.commit()
    return updated


async def delete_message(
    message_id: str,
    principal: Principal,
    uow: UnitOfWork,
    *,
    clock: Clock = _system_clock,
) -> Message:
    """Soft-delete a message. Allowed for its author or a conversation admin/moderator."""
    message = await uow.messages.get_by_id(message_id)
    if message is None or message.is_deleted:
        raise NotFoundError("Message not found")

    if message.author_id != principal.user_id:
        participant = await uow.participants.get(message.conversation_id, principal.user_id)
        if not can_moderate(participant):
            raise NotOwnerError("Only the author or a moderator can delete this message")

    deleted = await uow.messages_w.soft_delete(message_id, clock.now())
    await uow.commit()
    return deleted
