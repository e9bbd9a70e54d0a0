from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from chat_relay.domain.value_objects.enums import MessageType


@dataclass(frozen=True, slots=True)
class CreateMessageDTO:
    conversation_id: str
    content: str
    type: MessageType = MessageType.TEXT
    reply_to_id: str | None = None


@dataclass(frozen=True, slots=True)
class MessagePageDTO:
    limit: int = 50
    offset: int = 0
    before: datetime | None = None
    after: datetime | None = None
