from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class Conversation:
    id: str
    title: str
    description: str | None
    type: str
    last_message_at: datetime | None
    created_at: datetime
    updated_at: datetime
