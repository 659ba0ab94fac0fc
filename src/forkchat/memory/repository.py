from __future__ import annotations

import json
from contextlib import AbstractContextManager
from typing import Protocol, runtime_checkable

from forkchat.models import ChatRecord, ChatSnapshot, ContentPart, MessageNode, UsageRecord
from forkchat.memory.store import MemoryStore


@runtime_checkable
class ChatRepository(Protocol):
    """Storage primitives the message tree is written against."""

    def transaction(self) -> AbstractContextManager[None]: ...

    def load_chat_with_messages(self, chat_id: str) -> ChatSnapshot | None: ...

    def find_chat_id(self, message_id: str) -> str | None: ...

    def save_message(self, node: MessageNode) -> None: ...

    def save_chat(self, chat: ChatRecord) -> None: ...

    def delete_messages(self, ids: list[str]) -> None: ...


class SqliteChatRepository:
    def __init__(self, store: MemoryStore):
        self._store = store

    def transaction(self) -> AbstractContextManager[None]:
        return self._store.transaction()

    def load_chat_with_messages(self, chat_id: str) -> ChatSnapshot | None:
        with self._store.locked():
            return self._load_chat_with_messages(chat_id)

    def _load_chat_with_messages(self, chat_id: str) -> ChatSnapshot | None:
        row = self._store.execute(
            "SELECT id, user_id, leaf_message_id, created_at, updated_at FROM chats WHERE id = ? LIMIT 1",
            (chat_id,),
        ).fetchone()
        if row is None:
            return None
        chat = ChatRecord(
            id=row["id"],
            user_id=row["user_id"],
            leaf_message_id=row["leaf_message_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
        rows = self._store.execute(
            """
            SELECT m.id, m.chat_id, m.parent_id, m.role, m.content_json, m.created_at, m.edited, m.reaction,
                   u.message_id AS usage_message_id, u.input_tokens, u.output_tokens, u.reasoning_tokens,
                   u.is_usage_reliable, u.preprocess_duration_ms, u.first_response_duration_ms,
                   u.total_duration_ms, u.input_cost, u.output_cost, u.finish_reason,
                   u.created_at AS usage_created_at
            FROM messages m
            LEFT JOIN message_usage u ON u.message_id = m.id
            WHERE m.chat_id = ?
            ORDER BY m.created_at ASC, m.rowid ASC
            """,
            (chat_id,),
        ).fetchall()
        return ChatSnapshot(chat=chat, messages=[self._row_to_node(r) for r in rows])

    def find_chat_id(self, message_id: str) -> str | None:
        with self._store.locked():
            row = self._store.execute(
                "SELECT chat_id FROM messages WHERE id = ? LIMIT 1",
                (message_id,),
            ).fetchone()
        return None if row is None else str(row["chat_id"])

    def save_message(self, node: MessageNode) -> None:
        content_json = json.dumps([part.to_dict() for part in node.content], ensure_ascii=True)
        reaction = None if node.reaction is None else int(node.reaction)
        self._store.execute(
            """
            INSERT INTO messages (id, chat_id, parent_id, role, content_json, created_at, edited, reaction)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                content_json = excluded.content_json,
                edited = excluded.edited,
                reaction = excluded.reaction
            """,
            (
                node.id,
                node.chat_id,
                node.parent_id,
                node.role,
                content_json,
                node.created_at,
                int(node.edited),
                reaction,
            ),
        )
        if node.usage is None:
            self._store.execute("DELETE FROM message_usage WHERE message_id = ?", (node.id,))
            return
        usage = node.usage
        self._store.execute(
            """
            INSERT OR REPLACE INTO message_usage (
                message_id, input_tokens, output_tokens, reasoning_tokens, is_usage_reliable,
                preprocess_duration_ms, first_response_duration_ms, total_duration_ms,
                input_cost, output_cost, finish_reason, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                node.id,
                usage.input_tokens,
                usage.output_tokens,
                usage.reasoning_tokens,
                int(usage.is_usage_reliable),
                usage.preprocess_duration_ms,
                usage.first_response_duration_ms,
                usage.total_duration_ms,
                usage.input_cost,
                usage.output_cost,
                usage.finish_reason,
                usage.created_at,
            ),
        )

    def save_chat(self, chat: ChatRecord) -> None:
        self._store.execute(
            """
            INSERT INTO chats (id, user_id, leaf_message_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                leaf_message_id = excluded.leaf_message_id,
                updated_at = excluded.updated_at
            """,
            (chat.id, chat.user_id, chat.leaf_message_id, chat.created_at, chat.updated_at),
        )

    def delete_messages(self, ids: list[str]) -> None:
        # Children before parents keeps the parent_id foreign key satisfied.
        self._store.executemany(
            "DELETE FROM messages WHERE id = ?",
            [(message_id,) for message_id in reversed(ids)],
        )

    def _row_to_node(self, row) -> MessageNode:
        usage: UsageRecord | None = None
        if row["usage_message_id"] is not None:
            usage = UsageRecord(
                input_tokens=int(row["input_tokens"]),
                output_tokens=int(row["output_tokens"]),
                reasoning_tokens=int(row["reasoning_tokens"]),
                is_usage_reliable=bool(row["is_usage_reliable"]),
                preprocess_duration_ms=int(row["preprocess_duration_ms"]),
                first_response_duration_ms=int(row["first_response_duration_ms"]),
                total_duration_ms=int(row["total_duration_ms"]),
                input_cost=float(row["input_cost"]),
                output_cost=float(row["output_cost"]),
                finish_reason=str(row["finish_reason"]),
                created_at=str(row["usage_created_at"]),
            )
        parts = json.loads(row["content_json"])
        return MessageNode(
            id=row["id"],
            chat_id=row["chat_id"],
            parent_id=row["parent_id"],
            role=row["role"],
            content=tuple(ContentPart.from_dict(p) for p in parts),
            created_at=row["created_at"],
            edited=bool(row["edited"]),
            usage=usage,
            reaction=None if row["reaction"] is None else bool(row["reaction"]),
        )
