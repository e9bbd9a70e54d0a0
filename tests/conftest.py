"""Shared test fixtures."""
from __future__ import annotations

import dataclasses
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import TracebackType
from typing import Any, Self

import jwt
import pytest

from chat_relay.application.dto.message import MessagePageDTO
from chat_relay.application.dto.principal import Principal
from chat_relay.application.exceptions import NotFoundError
from chat_relay.config import settings
from chat_relay.domain.entities.conversation import Conversation
from chat_relay.domain.entities.message import Message
from chat_relay.domain.entities.participant import Participant
from chat_relay.domain.value_objects.enums import (
    ConversationType,
    MessageType,
    ParticipantRole,
)
from chat_relay.infrastructure.ws.protocol import MessagePayload

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock; ``now`` and ``monotonic`` move together."""

    def __init__(self, start: datetime = T0) -> None:
        self._start = start
        self._elapsed = 0.0

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def monotonic(self) -> float:
        return 1000.0 + self._elapsed

    def advance(self, seconds: float) -> None:
        self._elapsed += seconds


class FakeSocket:
    """Records frames written by a connection's writer task."""

    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[str] = []
        self.fail = fail

    async def send_text(self, raw: str) -> None:
        if self.fail:
            raise ConnectionResetError("socket is gone")
        self.sent.append(raw)

    def frames(self, event_type: str | None = None) -> list[dict[str, Any]]:
        decoded = [json.loads(raw) for raw in self.sent]
        if event_type is None:
            return decoded
        return [f for f in decoded if f["type"] == event_type]


@pytest.fixture
def alice() -> Principal:
    return Principal(user_id="u-alice", username="alice")


@pytest.fixture
def bob() -> Principal:
    return Principal(user_id="u-bob", username="bob")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_conversation(
    *,
    conversation_id: str | None = None,
    title: str = "general",
    type: str = ConversationType.GROUP,
    last_message_at: datetime | None = None,
) -> Conversation:
    return Conversation(
        id=conversation_id or str(uuid.uuid4()),
        title=title,
        description=None,
        type=type,
        last_message_at=last_message_at,
        created_at=T0,
        updated_at=T0,
    )


def make_participant(
    conversation_id: str,
    principal: Principal,
    *,
    role: str = ParticipantRole.MEMBER,
    left_at: datetime | None = None,
) -> Participant:
    return Participant(
        conversation_id=conversation_id,
        user_id=principal.user_id,
        username=principal.username,
        role=role,
        joined_at=T0,
        left_at=left_at,
    )


def make_message(
    conversation_id: str,
    author: Principal,
    *,
    content: str = "hello",
    created_at: datetime = T0,
    deleted_at: datetime | None = None,
) -> Message:
    return Message(
        id=str(uuid.uuid4()),
        conversation_id=conversation_id,
        author_id=author.user_id,
        author_username=author.username,
        type=MessageType.TEXT,
        content=content,
        reply_to_id=None,
        created_at=created_at,
        deleted_at=deleted_at,
    )


def make_payload(
    conversation_id: str,
    author: Principal,
    *,
    content: str = "hello",
    created_at: datetime = T0,
    message_id: str | None = None,
) -> MessagePayload:
    message = make_message(conversation_id, author, content=content, created_at=created_at)
    if message_id is not None:
        message = dataclasses.replace(message, id=message_id)
    return MessagePayload.from_entity(message)


def make_token(principal: Principal) -> str:
    return jwt.encode(
        {"sub": principal.user_id, "username": principal.username},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


@dataclass
class FakeParticipantReader:
    _participants: list[Participant] = field(default_factory=list)

    async def get(self, conversation_id: str, user_id: str) -> Participant | None:
        for p in self._participants:
            if p.conversation_id == conversation_id and p.user_id == user_id:
                return p
        return None

    async def is_active_participant(self, conversation_id: str, user_id: str) -> bool:
        participant = await self.get(conversation_id, user_id)
        return participant is not None and participant.is_active

    async def list_participants(
        self, conversation_id: str, *, include_left: bool = False
    ) -> list[Participant]:
        return [
            p for p in self._participants
            if p.conversation_id == conversation_id and (include_left or p.is_active)
        ]


@dataclass
class FakeParticipantWriter:
    _reader: FakeParticipantReader

    async def add(self, participant: Participant) -> None:
        self._reader._participants = [
            p for p in self._reader._participants
            if not (p.conversation_id == participant.conversation_id and p.user_id == participant.user_id)
        ]
        self._reader._participants.append(participant)

    async def mark_left(self, conversation_id: str, user_id: str, ts: datetime) -> None:
        self._reader._participants = [
            dataclasses.replace(p, left_at=ts)
            if p.conversation_id == conversation_id and p.user_id == user_id
            else p
            for p in self._reader._participants
        ]


@dataclass
class FakeConversationReader:
    _participants: FakeParticipantReader
    _store: dict[str, Conversation] = field(default_factory=dict)

    async def get_by_id(self, conversation_id: str) -> Conversation | None:
        return self._store.get(conversation_id)

    async def list_for_user(
        self, user_id: str, *, cursor: str | None = None, limit: int = 20
    ) -> list[Conversation]:
        ids = {
            p.conversation_id for p in self._participants._participants
            if p.user_id == user_id and p.is_active
        }
        convs = [c for cid, c in self._store.items() if cid in ids]
        convs.sort(key=lambda c: c.last_message_at or c.created_at, reverse=True)
        return convs[:limit]


@dataclass
class FakeConversationWriter:
    _reader: FakeConversationReader

    async def create(self, conversation: Conversation) -> Conversation:
        self._reader._store[conversation.id] = conversation
        return conversation

    async def touch_last_message_at(self, conversation_id: str, ts: datetime) -> None:
        conv = self._reader._store[conversation_id]
        self._reader._store[conversation_id] = dataclasses.replace(conv, last_message_at=ts)


@dataclass
class FakeMessageReader:
    _messages: list[Message] = field(default_factory=list)

    async def get_by_id(self, message_id: str) -> Message | None:
        for m in self._messages:
            if m.id == message_id:
                return m
        return None

    async def list_messages(self, conversation_id: str, page: MessagePageDTO) -> list[Message]:
        rows = [
            m for m in self._messages
            if m.conversation_id == conversation_id
            and not m.is_deleted
            and (page.before is None or m.created_at < page.before)
            and (page.after is None or m.created_at > page.after)
        ]
        rows.sort(key=lambda m: m.created_at, reverse=True)
        return rows[page.offset:page.offset + page.limit]


@dataclass
class FakeMessageWriter:
    _reader: FakeMessageReader

    async def create(self, message: Message) -> Message:
        self._reader._messages.append(message)
        return message

    async def update_content(self, message_id: str, content: str, edited_at: datetime) -> Message:
        return self._replace(message_id, content=content, edited_at=edited_at)

    async def soft_delete(self, message_id: str, deleted_at: datetime) -> Message:
        return self._replace(message_id, deleted_at=deleted_at)

    def _replace(self, message_id: str, **changes: Any) -> Message:
        for i, m in enumerate(self._reader._messages):
            if m.id == message_id:
                updated = dataclasses.replace(m, **changes)
                self._reader._messages[i] = updated
                return updated
        raise NotFoundError("Message not found")


@dataclass
class FakeUoW:
    """In-memory UoW for unit tests."""
    participants: FakeParticipantReader = field(default_factory=FakeParticipantReader)
    participants_w: FakeParticipantWriter | None = None
    conversations: FakeConversationReader | None = None
    conversations_w: FakeConversationWriter | None = None
    messages: FakeMessageReader = field(default_factory=FakeMessageReader)
    messages_w: FakeMessageWriter | None = None
    commits: int = 0
    rollbacks: int = 0

    def __post_init__(self) -> None:
        if self.participants_w is None:
            self.participants_w = FakeParticipantWriter(self.participants)
        if self.conversations is None:
            self.conversations = FakeConversationReader(self.participants)
        if self.conversations_w is None:
            self.conversations_w = FakeConversationWriter(self.conversations)
        if self.messages_w is None:
            self.messages_w = FakeMessageWriter(self.messages)

    @property
    def _committed(self) -> bool:
        return self.commits > 0

    def add_conversation(self, conversation: Conversation, *members: Participant) -> None:
        self.conversations._store[conversation.id] = conversation
        self.participants._participants.extend(members)

    async def flush(self) -> None:
        pass

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            await self.rollback()
