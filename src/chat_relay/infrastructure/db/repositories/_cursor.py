"""Cursor-based pagination helpers.

Cursor format: base64("<iso-timestamp>|<id>")
"""
from __future__ import annotations

import base64
from datetime import datetime, timezone

from chat_relay.application.exceptions import ValidationError


def encode_cursor(ts: datetime | None, item_id: str) -> str:
    ts_str = (ts or datetime.min.replace(tzinfo=timezone.utc)).isoformat()
    raw = f"{ts_str}|{item_id}"
    cursor = base64.urlsafe_b64encode(raw.encode()).decode()
    return cursor.rstrip("=")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    # Restore base64 padding if it was stripped
    cursor += "=" * ((4 - len(cursor) % 4) % 4)
    try:
        raw = base64.urlsafe_b64decode(cursor.encode()).decode()
        ts_str, item_id = raw.split("|", 1)
        return datetime.fromisoformat(ts_str), item_id
    except ValueError as exc:
        raise ValidationError("Malformed cursor") from exc
