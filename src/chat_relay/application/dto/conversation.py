from __future__ import annotations

from dataclasses import dataclass, field

from chat_relay.domain.value_objects.enums import ConversationType, ParticipantRole


@dataclass(frozen=True, slots=True)
class ParticipantRef:
    user_id: str
    username: str
    role: ParticipantRole = ParticipantRole.MEMBER


@dataclass(frozen=True, slots=True)
class CreateConversationDTO:
    title: str
    type: ConversationType = ConversationType.DIRECT
    description: str | None = None
    participants: list[ParticipantRef] = field(default_factory=list)
