from forkchat.memory.events import EventEmitter
from forkchat.models import ChatRecord, ContentPart, MessageNode, UsageRecord
from forkchat.memory.repository import ChatRepository, SqliteChatRepository
from forkchat.memory.store import MemoryStore
from forkchat.memory.tree import ChatForest, MessageTree

__all__ = [
    "ChatForest",
    "ChatRecord",
    "ChatRepository",
    "ContentPart",
    "EventEmitter",
    "MemoryStore",
    "MessageNode",
    "MessageTree",
    "SqliteChatRepository",
    "UsageRecord",
]
