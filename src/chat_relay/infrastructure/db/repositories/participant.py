from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from chat_relay.domain.entities.participant import Participant
from chat_relay.infrastructure.db.mappers import participant as mapper
from chat_relay.infrastructure.db.models.participant import ParticipantModel


class ParticipantReaderRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, conversation_id: str, user_id: str) -> Participant | None:
        stmt = select(ParticipantModel).where(
            ParticipantModel.conversation_id == conversation_id,
            ParticipantModel.user_id == user_id,
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return mapper.model_to_entity(model) if model else None

    async def is_active_participant(
        self,
        conversation_id: str,
        user_id: str,
    ) -> bool:
        stmt = (
            select(ParticipantModel.id)
            .where(
                ParticipantModel.conversation_id == conversation_id,
                ParticipantModel.user_id == user_id,
                ParticipantModel.left_at.is_(None),
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def list_participants(
        self,
        conversation_id: str,
        *,
        include_left: bool = False,
    ) -> list[Participant]:
        stmt = select(ParticipantModel).where(
            ParticipantModel.conversation_id == conversation_id
        )
        if not include_left:
            stmt = stmt.where(ParticipantModel.left_at.is_(None))
        stmt = stmt.order_by(ParticipantModel.joined_at.asc())
        result = await self._session.execute(stmt)
        return [mapper.model_to_entity(m) for m in result.scalars().all()]


class ParticipantWriterRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, participant: Participant) -> None:
        stmt = (
            pg_insert(ParticipantModel)
            .values(
                conversation_id=participant.conversation_id,
                user_id=participant.user_id,
                username=participant.username,
                role=participant.role,
                joined_at=participant.joined_at,
                left_at=None,
            )
            .on_conflict_do_update(
                constraint="uq_participant_member",
                set_={
                    "role": participant.role,
                    "username": participant.username,
                    "joined_at": participant.joined_at,
                    "left_at": None,
                },
            )
        )
        await self._session.execute(stmt)

    async def mark_left(
        self,
        conversation_id: str,
        user_id: str,
        ts: datetime,
    ) -> None:
        stmt = (
            update(ParticipantModel)
            .where(
                ParticipantModel.conversation_id == conversation_id,
                ParticipantModel.user_id == user_id,
                ParticipantModel.left_at.is_(None),
            )
            .values(left_at=ts)
        )
        await self._session.execute(stmt)
