"""Client-side message list for one conversation.

Sent messages appear immediately as pending entries. The authoritative copy
broadcast by the server replaces the oldest pending entry with the same
author and content, keeping its position; a failed entry is only taken when
nothing is pending. Entries that never get confirmed turn failed and may be
retried.
"""
from __future__ import annotations

import threading
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Iterable

from chat_relay.application.exceptions import ConflictError, NotFoundError
from chat_relay.application.ports.clock import Clock, SystemClock
from chat_relay.domain.value_objects.enums import MessageType
from chat_relay.infrastructure.ws.protocol import MessagePayload

DEFAULT_SEND_TIMEOUT = 10.0
MAX_RETRIES = 3


class EntryState(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(slots=True)
class TimelineEntry:
    content: str
    author_id: str
    author_username: str
    state: EntryState
    intent_type: MessageType = MessageType.TEXT
    reply_to_id: str | None = None
    local_id: str | None = None
    message: MessagePayload | None = None
    retry_count: int = 0
    sent_at: float = 0.0

    @property
    def id(self) -> str:
        if self.message is not None:
            return self.message.id
        assert self.local_id is not None
        return self.local_id

    @property
    def created_at(self) -> datetime | None:
        return self.message.created_at if self.message is not None else None

    @property
    def is_own(self) -> bool:
        return self.local_id is not None

    @property
    def can_retry(self) -> bool:
        return self.state == EntryState.FAILED and self.retry_count < MAX_RETRIES


def _match_key(author_id: str, content: str) -> tuple[str, str]:
    return author_id, content.strip()


class ConversationTimeline:
    def __init__(
        self,
        conversation_id: str,
        user_id: str,
        *,
        username: str = "",
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        clock: Clock | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.username = username
        self._timeout = send_timeout
        self._clock = clock or SystemClock()
        self._lock = threading.RLock()
        self._entries: list[TimelineEntry] = []
        self._by_local: dict[str, TimelineEntry] = {}
        self._by_server: dict[str, TimelineEntry] = {}
        # (author_id, content) -> local ids awaiting confirmation, oldest first
        self._unmatched: dict[tuple[str, str], deque[str]] = {}

    def entries(self) -> list[TimelineEntry]:
        with self._lock:
            return list(self._entries)

    def get(self, entry_id: str) -> TimelineEntry | None:
        with self._lock:
            return self._by_local.get(entry_id) or self._by_server.get(entry_id)

    def in_flight(self) -> list[TimelineEntry]:
        with self._lock:
            return [e for e in self._entries if e.state == EntryState.PENDING]

    def add_pending(
        self,
        content: str,
        *,
        intent_type: MessageType = MessageType.TEXT,
        reply_to_id: str | None = None,
    ) -> TimelineEntry:
        content = content.strip()
        with self._lock:
            entry = TimelineEntry(
                content=content,
                author_id=self.user_id,
                author_username=self.username,
                state=EntryState.PENDING,
                intent_type=intent_type,
                reply_to_id=reply_to_id,
                local_id=f"local-{uuid.uuid4().hex}",
                sent_at=self._clock.monotonic(),
            )
            self._entries.append(entry)
            self._by_local[entry.local_id] = entry
            self._unmatched.setdefault(_match_key(self.user_id, content), deque()).append(
                entry.local_id,
            )
            return entry

    def apply_message(self, payload: MessagePayload) -> TimelineEntry | None:
        """Merge an authoritative message. Returns the entry now holding it."""
        if payload.deleted_at is not None:
            self.apply_delete(payload.id)
            return None
        with self._lock:
            existing = self._by_server.get(payload.id)
            if existing is not None:
                return existing

            entry = self._take_unmatched(_match_key(payload.author_id, payload.content))
            if entry is not None:
                entry.message = payload
                entry.content = payload.content
                entry.state = EntryState.CONFIRMED
            else:
                entry = TimelineEntry(
                    content=payload.content,
                    author_id=payload.author_id,
                    author_username=payload.author.username,
                    state=EntryState.CONFIRMED,
                    intent_type=payload.type,
                    reply_to_id=payload.reply_to_id,
                    message=payload,
                )
                self._insert_by_time(entry)
            self._by_server[payload.id] = entry
            return entry

    def mark_failed(self, local_id: str) -> bool:
        """Fail a pending entry. Only the first failure of an attempt counts."""
        with self._lock:
            entry = self._by_local.get(local_id)
            if entry is None or entry.state != EntryState.PENDING:
                return False
            entry.state = EntryState.FAILED
            return True

    def reject(self, local_id: str) -> bool:
        """Fail an entry the server refused. No broadcast will ever confirm it."""
        with self._lock:
            entry = self._by_local.get(local_id)
            if entry is None or entry.state == EntryState.CONFIRMED:
                return False
            self._discard_unmatched(entry)
            if entry.state != EntryState.PENDING:
                return False
            entry.state = EntryState.FAILED
            return True

    def expire(self) -> list[TimelineEntry]:
        """Fail every pending entry whose confirmation is overdue."""
        now = self._clock.monotonic()
        with self._lock:
            overdue = [
                e for e in self._entries
                if e.state == EntryState.PENDING and e.sent_at + self._timeout <= now
            ]
            for entry in overdue:
                entry.state = EntryState.FAILED
            return overdue

    def fail_in_flight(self) -> list[TimelineEntry]:
        with self._lock:
            pending = [e for e in self._entries if e.state == EntryState.PENDING]
            for entry in pending:
                entry.state = EntryState.FAILED
            return pending

    def begin_retry(self, local_id: str) -> TimelineEntry:
        with self._lock:
            entry = self._by_local.get(local_id)
            if entry is None:
                raise NotFoundError("No such pending message")
            if not entry.can_retry:
                raise ConflictError("Message cannot be retried")
            entry.retry_count += 1
            entry.state = EntryState.PENDING
            key = _match_key(entry.author_id, entry.content)
            queue = self._unmatched.setdefault(key, deque())
            if local_id not in queue:
                queue.append(local_id)
            entry.sent_at = self._clock.monotonic()
            return entry

    def dismiss(self, local_id: str) -> bool:
        with self._lock:
            entry = self._by_local.get(local_id)
            if entry is None or entry.state == EntryState.CONFIRMED:
                return False
            self._entries.remove(entry)
            del self._by_local[local_id]
            self._discard_unmatched(entry)
            return True

    def apply_update(self, payload: MessagePayload) -> TimelineEntry | None:
        with self._lock:
            entry = self._by_server.get(payload.id)
            if entry is None:
                return None
            entry.message = payload
            entry.content = payload.content
            return entry

    def apply_delete(self, message_id: str) -> bool:
        with self._lock:
            entry = self._by_server.pop(message_id, None)
            if entry is None:
                return False
            self._entries.remove(entry)
            if entry.local_id is not None:
                self._by_local.pop(entry.local_id, None)
            return True

    def load_history(self, payloads: Iterable[MessagePayload]) -> int:
        """Merge a fetched page. Returns how many entries were new."""
        added = 0
        with self._lock:
            for payload in sorted(payloads, key=lambda p: p.created_at):
                known = payload.id in self._by_server
                if self.apply_message(payload) is not None and not known:
                    added += 1
        return added

    def _take_unmatched(self, key: tuple[str, str]) -> TimelineEntry | None:
        # Oldest pending entry first; a failed one only when nothing is pending.
        queue = self._unmatched.get(key)
        if not queue:
            return None
        fallback: TimelineEntry | None = None
        chosen: TimelineEntry | None = None
        for local_id in queue:
            entry = self._by_local.get(local_id)
            if entry is None or entry.state == EntryState.CONFIRMED:
                continue
            if entry.state == EntryState.PENDING:
                chosen = entry
                break
            if fallback is None:
                fallback = entry
        chosen = chosen or fallback
        if chosen is not None:
            queue.remove(chosen.local_id)
        if not queue:
            del self._unmatched[key]
        return chosen

    def _discard_unmatched(self, entry: TimelineEntry) -> None:
        key = _match_key(entry.author_id, entry.content)
        queue = self._unmatched.get(key)
        if queue is None or entry.local_id not in queue:
            return
        queue.remove(entry.local_id)
        if not queue:
            del self._unmatched[key]

    def _insert_by_time(self, entry: TimelineEntry) -> None:
        assert entry.created_at is not None
        index = len(self._entries)
        for i in range(len(self._entries) - 1, -1, -1):
            other = self._entries[i].created_at
            if other is None:
                continue
            if other <= entry.created_at:
                break
            index = i
        self._entries.insert(index, entry)
