from __future__ import annotations

from datetime import datetime
from typing import Protocol

from chat_relay.application.dto.message import MessagePageDTO
from chat_relay.domain.entities.message import Message


class MessageReader(Protocol):
    async def get_by_id(self, message_id: str) -> Message | None: ...

    async def list_messages(
        self,
        conversation_id: str,
        page: MessagePageDTO,
    ) -> list[Message]:
        """Newest page first (created_at descending), soft-deleted rows excluded."""
        ...


class MessageWriter(Protocol):
    async def create(self, message: Message) -> Message: ...

    async def update_content(
        self, message_id: str, content: str, edited_at: datetime
    ) -> Message: ...

    async def soft_delete(self, message_id: str, deleted_at: datetime) -> Message: ...
