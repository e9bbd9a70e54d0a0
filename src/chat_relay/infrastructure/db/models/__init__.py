"""Import all models so Base.metadata knows every table."""
from chat_relay.infrastructure.db.models.conversation import ConversationModel
from chat_relay.infrastructure.db.models.message import MessageModel
from chat_relay.infrastructure.db.models.participant import ParticipantModel

__all__ = [
    "ConversationModel",
    "MessageModel",
    "ParticipantModel",
]
