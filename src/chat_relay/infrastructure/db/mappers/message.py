from __future__ import annotations

from chat_relay.domain.entities.message import Message
from chat_relay.infrastructure.db.models.message import MessageModel


def model_to_entity(model: MessageModel) -> Message:
    return Message(
        id=model.id,
        conversation_id=model.conversation_id,
        author_id=model.author_id,
        author_username=model.author_username,
        type=model.type,
        content=model.content,
        reply_to_id=model.reply_to_id,
        created_at=model.created_at,
        edited_at=model.edited_at,
        deleted_at=model.deleted_at,
    )


def entity_to_model(entity: Message) -> MessageModel:
    return MessageModel(
        id=entity.id,
        conversation_id=entity.conversation_id,
        author_id=entity.author_id,
        author_username=entity.author_username,
        type=entity.type,
        content=entity.content,
        reply_to_id=entity.reply_to_id,
        created_at=entity.created_at,
        edited_at=entity.edited_at,
        deleted_at=entity.deleted_at,
    )
