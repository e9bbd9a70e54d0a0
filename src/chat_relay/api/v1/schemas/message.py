from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from chat_relay.domain.value_objects.enums import MessageType


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1)
    type: MessageType = MessageType.TEXT
    reply_to_id: str | None = None


class EditMessageRequest(BaseModel):
    content: str = Field(min_length=1)


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    author_id: str
    author_username: str
    type: str
    content: str
    reply_to_id: str | None
    created_at: datetime
    edited_at: datetime | None = None
    deleted_at: datetime | None = None

    model_config = {"from_attributes": True}
