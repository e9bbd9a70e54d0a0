from __future__ import annotations

from datetime import datetime
from typing import Protocol

from chat_relay.domain.entities.participant import Participant


class ParticipantReader(Protocol):
    async def get(self, conversation_id: str, user_id: str) -> Participant | None:
        """Return the membership record, including one that has left."""
        ...

    async def is_active_participant(
        self,
        conversation_id: str,
        user_id: str,
    ) -> bool: ...

    async def list_participants(
        self, conversation_id: str, *, include_left: bool = False
    ) -> list[Participant]: ...


class ParticipantWriter(Protocol):
    async def add(self, participant: Participant) -> None:
        """Insert, or re-activate a membership that has left."""
        ...

    async def mark_left(
        self, conversation_id: str, user_id: str, ts: datetime
    ) -> None: ...
