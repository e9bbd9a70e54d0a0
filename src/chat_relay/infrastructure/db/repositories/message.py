from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chat_relay.application.dto.message import MessagePageDTO
from chat_relay.application.exceptions import NotFoundError
from chat_relay.domain.entities.message import Message
from chat_relay.infrastructure.db.mappers import message as mapper
from chat_relay.infrastructure.db.models.message import MessageModel


class MessageReaderRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, message_id: str) -> Message | None:
        model = await self._session.get(MessageModel, message_id)
        return mapper.model_to_entity(model) if model else None

    async def list_messages(
        self,
        conversation_id: str,
        page: MessagePageDTO,
    ) -> list[Message]:
        stmt = (
            select(MessageModel)
            .where(
                MessageModel.conversation_id == conversation_id,
                MessageModel.deleted_at.is_(None),
            )
            .order_by(MessageModel.created_at.desc(), MessageModel.id.desc())
            .offset(page.offset)
            .limit(page.limit)
        )
        if page.before is not None:
            stmt = stmt.where(MessageModel.created_at < page.before)
        if page.after is not None:
            stmt = stmt.where(MessageModel.created_at > page.after)
        result = await self._session.execute(stmt)
        return [mapper.model_to_entity(m) for m in result.scalars().all()]


class MessageWriterRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, message: Message) -> Message:
        model = mapper.entity_to_model(message)
        self._session.add(model)
        await self._session.flush()
        return mapper.model_to_entity(model)

    async def update_content(
        self,
        message_id: str,
        content: str,
        edited_at: datetime,
    ) -> Message:
        stmt = (
            update(MessageModel)
            .where(MessageModel.id == message_id)
            .values(content=content, edited_at=edited_at)
            .returning(MessageModel)
        )
        return await self._returning_one(stmt)

    async def soft_delete(self, message_id: str, deleted_at: datetime) -> Message:
        stmt = (
            update(MessageModel)
            .where(MessageModel.id == message_id)
            .values(deleted_at=deleted_at)
            .returning(MessageModel)
        )
        return await self._returning_one(stmt)

    async def _returning_one(self, stmt) -> Message:  # noqa: ANN001
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            raise NotFoundError("Message not found")
        return mapper.model_to_entity(model)
