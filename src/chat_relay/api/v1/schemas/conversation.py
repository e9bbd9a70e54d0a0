from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from chat_relay.application.dto.conversation import ParticipantRef
from chat_relay.domain.value_objects.enums import ConversationType, ParticipantRole


class ParticipantIn(BaseModel):
    user_id: str = Field(min_length=1)
    username: str = Field(min_length=1)
    role: ParticipantRole = ParticipantRole.MEMBER

    def to_ref(self) -> ParticipantRef:
        return ParticipantRef(user_id=self.user_id, username=self.username, role=self.role)


class CreateConversationRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    type: ConversationType = ConversationType.DIRECT
    description: str | None = None
    participants: list[ParticipantIn] = Field(default_factory=list)


class ConversationResponse(BaseModel):
    id: str
    title: str
    description: str | None
    type: str
    last_message_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ParticipantResponse(BaseModel):
    user_id: str
    username: str
    role: str
    joined_at: datetime
    left_at: datetime | None = None

    model_config = {"from_attributes": True}


class ConversationDetailResponse(ConversationResponse):
    participants: list[ParticipantResponse]
