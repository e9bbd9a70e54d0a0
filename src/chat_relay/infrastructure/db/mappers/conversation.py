from __future__ import annotations

from chat_relay.domain.entities.conversation import Conversation
from chat_relay.infrastructure.db.models.conversation import ConversationModel


def model_to_entity(model: ConversationModel) -> Conversation:
    return Conversation(
        id=model.id,
        title=model.title,
        description=model.description,
        type=model.type,
        last_message_at=model.last_message_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def entity_to_model(entity: Conversation) -> ConversationModel:
    return ConversationModel(
        id=entity.id,
        title=entity.title,
        description=entity.description,
        type=entity.type,
        last_message_at=entity.last_message_at,
        created_at=entity.created_at,
        updated_at=entity.updated_at,
    )
