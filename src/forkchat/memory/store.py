from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator


class MemoryStore:
    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._initialize_schema()

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    def executemany(self, query: str, seq_of_params: list[tuple[Any, ...]]) -> sqlite3.Cursor:
        return self._conn.executemany(query, seq_of_params)

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the connection lock across several reads."""
        with self._lock:
            yield

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Commit everything executed inside the block, or nothing."""
        with self._lock:
            try:
                yield
            except BaseException:
                self._conn.rollback()
                raise
            self._conn.commit()

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS chats (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                leaf_message_id TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
                parent_id TEXT NULL REFERENCES messages(id),
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                content_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                edited INTEGER NOT NULL DEFAULT 0 CHECK (edited IN (0, 1)),
                reaction INTEGER NULL CHECK (reaction IN (0, 1))
            );

            CREATE TABLE IF NOT EXISTS message_usage (
                message_id TEXT PRIMARY KEY REFERENCES messages(id) ON DELETE CASCADE,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                reasoning_tokens INTEGER NOT NULL DEFAULT 0,
                is_usage_reliable INTEGER NOT NULL CHECK (is_usage_reliable IN (0, 1)),
                preprocess_duration_ms INTEGER NOT NULL DEFAULT 0,
                first_response_duration_ms INTEGER NOT NULL DEFAULT 0,
                total_duration_ms INTEGER NOT NULL DEFAULT 0,
                input_cost REAL NOT NULL DEFAULT 0,
                output_cost REAL NOT NULL DEFAULT 0,
                finish_reason TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                chat_id TEXT NOT NULL,
                type TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_chat_created
                ON messages(chat_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_messages_parent
                ON messages(parent_id);
            CREATE INDEX IF NOT EXISTS idx_events_chat_created
                ON events(chat_id, created_at);
            """
        )
        self._conn.commit()
