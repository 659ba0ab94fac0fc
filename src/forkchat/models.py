from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

ROLES = ("user", "assistant", "system")


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class ContentPart:
    """One part of a message body: inline text or a reference to a stored blob."""

    type: str
    text: str = ""
    blob_id: str | None = None

    @classmethod
    def of_text(cls, text: str) -> ContentPart:
        return cls(type="text", text=text)

    @classmethod
    def of_blob(cls, blob_id: str) -> ContentPart:
        return cls(type="blob", blob_id=blob_id)

    def to_dict(self) -> dict:
        if self.type == "blob":
            return {"type": "blob", "blob_id": self.blob_id}
        return {"type": "text", "text": self.text}

    @classmethod
    def from_dict(cls, data: dict) -> ContentPart:
        if data.get("type") == "blob":
            return cls.of_blob(str(data.get("blob_id", "")))
        return cls.of_text(str(data.get("text", "")))


def content_text(content: tuple[ContentPart, ...] | list[ContentPart]) -> str:
    return "\n".join(part.text for part in content if part.type == "text")


@dataclass(frozen=True)
class UsageRecord:
    input_tokens: int
    output_tokens: int
    reasoning_tokens: int = 0
    is_usage_reliable: bool = True
    preprocess_duration_ms: int = 0
    first_response_duration_ms: int = 0
    total_duration_ms: int = 0
    input_cost: float = 0.0
    output_cost: float = 0.0
    finish_reason: str = "success"
    created_at: str = ""


@dataclass
class ChatRecord:
    id: str
    user_id: str
    leaf_message_id: str | None
    created_at: str
    updated_at: str


@dataclass
class MessageNode:
    id: str
    chat_id: str
    parent_id: str | None
    role: str
    content: tuple[ContentPart, ...]
    created_at: str
    edited: bool = False
    usage: UsageRecord | None = None
    reaction: bool | None = None

    @property
    def text(self) -> str:
        return content_text(self.content)


@dataclass
class ChatSnapshot:
    chat: ChatRecord
    messages: list[MessageNode] = field(default_factory=list)
