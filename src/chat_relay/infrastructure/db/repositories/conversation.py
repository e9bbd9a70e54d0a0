from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chat_relay.domain.entities.conversation import Conversation
from chat_relay.infrastructure.db.mappers import conversation as mapper
from chat_relay.infrastructure.db.models.conversation import ConversationModel
from chat_relay.infrastructure.db.models.participant import ParticipantModel
from chat_relay.infrastructure.db.repositories._cursor import decode_cursor


class ConversationReaderRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, conversation_id: str) -> Conversation | None:
        result = await self._session.get(ConversationModel, conversation_id)
        return mapper.model_to_entity(result) if result else None

    async def list_for_user(
        self,
        user_id: str,
        *,
        cursor: str | None = None,
        limit: int = 20,
    ) -> list[Conversation]:
        activity = func.coalesce(ConversationModel.last_message_at, ConversationModel.created_at)
        stmt = (
            select(ConversationModel)
            .join(
                ParticipantModel,
                ParticipantModel.conversation_id == ConversationModel.id,
            )
            .where(
                ParticipantModel.user_id == user_id,
                ParticipantModel.left_at.is_(None),
            )
            .order_by(activity.desc(), ConversationModel.id)
            .limit(limit)
        )
        if cursor:
            ts, cid = decode_cursor(cursor)
            stmt = stmt.where(
                (activity < ts)
                | (
                    (activity == ts)
                    & (ConversationModel.id > cid)
                )
            )
        result = await self._session.execute(stmt)
        return [mapper.model_to_entity(m) for m in result.scalars().all()]


class ConversationWriterRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, conversation: Conversation) -> Conversation:
        model = mapper.entity_to_model(conversation)
        self._session.add(model)
        await self._session.flush()
        return mapper.model_to_entity(model)

    async def touch_last_message_at(
        self,
        conversation_id: str,
        ts: datetime,
    ) -> None:
        stmt = (
            update(ConversationModel)
            .where(ConversationModel.id == conversation_id)
            .values(last_message_at=ts)
        )
        await self._session.execute(stmt)
