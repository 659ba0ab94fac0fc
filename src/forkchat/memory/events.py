from __future__ import annotations

import json
from uuid import uuid4

from forkchat.memory.store import MemoryStore
from forkchat.models import utc_now


class EventEmitter:
    """Writes audit events into the caller's open transaction; the caller commits."""

    def __init__(self, store: MemoryStore):
        self._store = store

    def emit(self, chat_id: str, event_type: str, payload: dict) -> None:
        self._store.execute(
            """
            INSERT INTO events (id, chat_id, type, payload_json, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                str(uuid4()),
                chat_id,
                event_type,
                json.dumps(payload, ensure_ascii=True),
                utc_now(),
            ),
        )
