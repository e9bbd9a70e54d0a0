from __future__ import annotations

from chat_relay.domain.entities.participant import Participant
from chat_relay.infrastructure.db.models.participant import ParticipantModel


def model_to_entity(model: ParticipantModel) -> Participant:
    return Participant(
        conversation_id=model.conversation_id,
        user_id=model.user_id,
        username=model.username,
        role=model.role,
        joined_at=model.joined_at,
        left_at=model.left_at,
    )


def entity_to_model(entity: Participant) -> ParticipantModel:
    return ParticipantModel(
        conversation_id=entity.conversation_id,
        user_id=entity.user_id,
        username=entity.username,
        role=entity.role,
        joined_at=entity.joined_at,
        left_at=entity.left_at,
    )
