"""WebSocket event models.

Every frame is a flat JSON object tagged by ``type``; keys are camelCase on the
wire. Frames are decoded once at the connection boundary into one of the
variants below.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from chat_relay.application.exceptions import AppError, ValidationError
from chat_relay.domain.entities.message import Message
from chat_relay.domain.value_objects.enums import MessageType


class WsModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Client → Server


class JoinConversation(WsModel):
    type: Literal["join_conversation"] = "join_conversation"
    conversation_id: str = Field(min_length=1)


class LeaveConversation(WsModel):
    type: Literal["leave_conversation"] = "leave_conversation"
    conversation_id: str = Field(min_length=1)


class TypingStart(WsModel):
    type: Literal["typing_start"] = "typing_start"
    conversation_id: str = Field(min_length=1)


class TypingStop(WsModel):
    type: Literal["typing_stop"] = "typing_stop"
    conversation_id: str = Field(min_length=1)


class CreateMessage(WsModel):
    type: Literal["message_created"] = "message_created"
    conversation_id: str = Field(min_length=1)
    content: str
    reply_to_id: str | None = None
    message_type: MessageType = MessageType.TEXT
    client_msg_id: str | None = None  # echoed back on error


class Ping(WsModel):
    type: Literal["ping"] = "ping"


ClientEvent = Annotated[
    Union[
        JoinConversation,
        LeaveConversation,
        TypingStart,
        TypingStop,
        CreateMessage,
        Ping,
    ],
    Field(discriminator="type"),
]


# Server → Client


class AuthorPayload(WsModel):
    id: str
    username: str


class MessagePayload(WsModel):
    id: str
    conversation_id: str
    author_id: str
    author: AuthorPayload
    content: str
    type: MessageType = MessageType.TEXT
    reply_to_id: str | None = None
    created_at: datetime
    edited_at: datetime | None = None
    deleted_at: datetime | None = None

    @classmethod
    def from_entity(cls, message: Message) -> MessagePayload:
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            author_id=message.author_id,
            author=AuthorPayload(id=message.author_id, username=message.author_username),
            content=message.content,
            type=MessageType(message.type),
            reply_to_id=message.reply_to_id,
            created_at=message.created_at,
            edited_at=message.edited_at,
            deleted_at=message.deleted_at,
        )


class Connected(WsModel):
    type: Literal["connected"] = "connected"
    user_id: str
    username: str


class JoinedConversation(WsModel):
    type: Literal["joined_conversation"] = "joined_conversation"
    conversation_id: str
    success: bool = True


class LeftConversation(WsModel):
    type: Literal["left_conversation"] = "left_conversation"
    conversation_id: str
    success: bool = True


class UserTyping(WsModel):
    type: Literal["user_typing"] = "user_typing"
    conversation_id: str
    user_id: str
    username: str
    is_typing: bool


class NewMessage(WsModel):
    type: Literal["new_message"] = "new_message"
    conversation_id: str
    message: MessagePayload

    @classmethod
    def from_entity(cls, message: Message) -> NewMessage:
        return cls(
            conversation_id=message.conversation_id,
            message=MessagePayload.from_entity(message),
        )


class MessageUpdated(WsModel):
    type: Literal["message_updated"] = "message_updated"
    conversation_id: str
    message: MessagePayload

    @classmethod
    def from_entity(cls, message: Message) -> MessageUpdated:
        return cls(
            conversation_id=message.conversation_id,
            message=MessagePayload.from_entity(message),
        )


class MessageDeleted(WsModel):
    type: Literal["message_deleted"] = "message_deleted"
    conversation_id: str
    message_id: str


class UserJoined(WsModel):
    type: Literal["user_joined"] = "user_joined"
    conversation_id: str
    user_id: str
    username: str


class UserLeft(WsModel):
    type: Literal["user_left"] = "user_left"
    conversation_id: str
    user_id: str


class ErrorEvent(WsModel):
    type: Literal["error"] = "error"
    error: str
    code: str
    conversation_id: str | None = None
    client_msg_id: str | None = None

    @classmethod
    def from_error(
        cls,
        exc: AppError,
        *,
        conversation_id: str | None = None,
        client_msg_id: str | None = None,
    ) -> ErrorEvent:
        return cls(
            error=exc.detail or exc.code,
            code=exc.code,
            conversation_id=conversation_id,
            client_msg_id=client_msg_id,
        )


class Pong(WsModel):
    type: Literal["pong"] = "pong"


ServerEvent = Annotated[
    Union[
        Connected,
        JoinedConversation,
        LeftConversation,
        UserTyping,
        NewMessage,
        MessageUpdated,
        MessageDeleted,
        UserJoined,
        UserLeft,
        ErrorEvent,
        Pong,
    ],
    Field(discriminator="type"),
]

_client_events: TypeAdapter[ClientEvent] = TypeAdapter(ClientEvent)
_server_events: TypeAdapter[ServerEvent] = TypeAdapter(ServerEvent)


def encode_event(event: WsModel) -> str:
    return event.model_dump_json(by_alias=True)


def decode_client_event(raw: str | bytes) -> ClientEvent:
    try:
        return _client_events.validate_json(raw)
    except PydanticValidationError as exc:
        raise ValidationError(_describe(exc)) from exc


def decode_server_event(raw: str | bytes) -> ServerEvent:
    try:
        return _server_events.validate_json(raw)
    except PydanticValidationError as exc:
        raise ValidationError(_describe(exc)) from exc


def server_event_from_dict(data: dict) -> ServerEvent:
    try:
        return _server_events.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(_describe(exc)) from exc


def _describe(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"Malformed event: {loc} {first.get('msg', '')}".strip()
