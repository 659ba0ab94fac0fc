"""Branchable message tree for a chat transcript.

A chat's messages form a forest linked by ``parent_id``. Editing can either
rewrite a node in place or fork a sibling next to it, and deleting a node
removes its whole subtree. The chat's ``leaf_message_id`` selects which
branch is the current transcript; it is stored as a plain id and is always
repointed or cleared when the node it names goes away.

Every mutation runs under a per-chat lock inside a single store
transaction, so a failed operation leaves the transcript unchanged.
"""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from collections.abc import Sequence
from dataclasses import replace
from uuid import uuid4

from loguru import logger

from forkchat.errors import BadRequest, Forbidden, NotFound
from forkchat.memory.events import EventEmitter
from forkchat.memory.repository import ChatRepository
from forkchat.models import ROLES, ChatRecord, ChatSnapshot, ContentPart, MessageNode, UsageRecord, utc_now
from forkchat.usage import TokenCounter, derive_for_edit

Content = str | Sequence[ContentPart]


def coerce_content(content: Content) -> tuple[ContentPart, ...]:
    if isinstance(content, str):
        return (ContentPart.of_text(content),)
    parts = tuple(content)
    for part in parts:
        if not isinstance(part, ContentPart):
            raise BadRequest(f"Unsupported content part: {part!r}")
    return parts


class ChatForest:
    """Arena of one chat's nodes keyed by id, with a parent -> children index."""

    def __init__(self, snapshot: ChatSnapshot):
        self.chat = snapshot.chat
        self._nodes: dict[str, MessageNode] = {}
        self._children: dict[str, list[str]] = defaultdict(list)
        for node in snapshot.messages:
            self._nodes[node.id] = node
        for node in snapshot.messages:
            if node.parent_id is not None:
                self._children[node.parent_id].append(node.id)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, message_id: str) -> MessageNode:
        node = self._nodes.get(message_id)
        if node is None:
            raise NotFound(f"Message not found: {message_id}")
        return node

    def nodes(self) -> list[MessageNode]:
        return sorted(self._nodes.values(), key=lambda n: n.created_at)

    def children(self, message_id: str | None) -> list[MessageNode]:
        if message_id is None:
            found = [n for n in self._nodes.values() if n.parent_id is None]
        else:
            found = [self._nodes[i] for i in self._children.get(message_id, [])]
        return sorted(found, key=lambda n: n.created_at)

    def descendant_closure(self, message_id: str) -> list[str]:
        """Return ``message_id`` and every descendant, breadth-first."""
        self.get(message_id)
        ordered: list[str] = []
        visited: set[str] = set()
        queue: deque[str] = deque([message_id])
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            ordered.append(current)
            for child_id in self._children.get(current, []):
                if child_id not in visited:
                    queue.append(child_id)
        return ordered

    def path_to(self, message_id: str) -> list[MessageNode]:
        """Root-to-node chain of ancestors, ending with the node itself."""
        path: list[MessageNode] = []
        seen: set[str] = set()
        current: str | None = message_id
        while current is not None:
            if current in seen:
                raise BadRequest(f"Cycle detected at message {current}")
            seen.add(current)
            node = self.get(current)
            path.append(node)
            current = node.parent_id
        path.reverse()
        return path


class _ChatLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def for_chat(self, chat_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(chat_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[chat_id] = lock
            return lock


class MessageTree:
    def __init__(
        self,
        repository: ChatRepository,
        token_counter: TokenCounter,
        *,
        events: EventEmitter | None = None,
    ):
        self._repository = repository
        self._token_counter = token_counter
        self._events = events
        self._locks = _ChatLocks()

    # -- chats ---------------------------------------------------------------

    def create_chat(self, user_id: str, *, system_prompt: str | None = None, chat_id: str | None = None) -> ChatRecord:
        now = utc_now()
        chat = ChatRecord(
            id=chat_id or str(uuid4()),
            user_id=user_id,
            leaf_message_id=None,
            created_at=now,
            updated_at=now,
        )
        with self._locks.for_chat(chat.id), self._repository.transaction():
            if self._repository.load_chat_with_messages(chat.id) is not None:
                raise BadRequest(f"Chat already exists: {chat.id}")
            self._repository.save_chat(chat)
            if system_prompt:
                node = self._new_node(chat.id, None, "system", coerce_content(system_prompt))
                self._repository.save_message(node)
                chat.leaf_message_id = node.id
                self._repository.save_chat(chat)
            self._emit(chat.id, "chat.created", {"chat_id": chat.id})
        logger.debug(f"Chat created: id={chat.id}, user={user_id}")
        return chat

    def load(self, chat_id: str, *, user_id: str) -> ChatForest:
        return self._load_owned(chat_id, user_id)

    # -- mutations -----------------------------------------------------------

    def append(
        self,
        chat_id: str,
        parent_id: str | None,
        role: str,
        content: Content,
        *,
        user_id: str,
        usage: UsageRecord | None = None,
    ) -> MessageNode:
        if role not in ROLES:
            raise BadRequest(f"Unknown role: {role!r}")
        parts = coerce_content(content)
        with self._locks.for_chat(chat_id), self._repository.transaction():
            forest = self._load_owned(chat_id, user_id)
            if parent_id is None:
                if len(forest):
                    raise BadRequest("parent_id is required once a chat has messages")
            elif parent_id not in forest:
                if self._repository.find_chat_id(parent_id) is not None:
                    raise BadRequest(f"Parent message {parent_id} belongs to another chat")
                raise NotFound(f"Parent message not found: {parent_id}")

            node = self._new_node(chat_id, parent_id, role, parts, usage=usage)
            self._repository.save_message(node)
            forest.chat.leaf_message_id = node.id
            forest.chat.updated_at = node.created_at
            self._repository.save_chat(forest.chat)
            self._emit(
                chat_id,
                "message.appended",
                {"chat_id": chat_id, "message_id": node.id, "parent_id": parent_id, "role": role},
            )
        return node

    def edit_in_place(self, message_id: str, new_content: Content, *, user_id: str) -> MessageNode:
        parts = coerce_content(new_content)
        chat_id = self._chat_id_for(message_id)
        with self._locks.for_chat(chat_id), self._repository.transaction():
            forest = self._load_owned(chat_id, user_id)
            node = forest.get(message_id)
            updated = replace(node, content=parts, edited=True)
            self._repository.save_message(updated)
            forest.chat.updated_at = utc_now()
            self._repository.save_chat(forest.chat)
            self._emit(chat_id, "message.edited", {"chat_id": chat_id, "message_id": message_id})
        return updated

    def edit_and_fork(self, message_id: str, new_content: Content, *, user_id: str) -> MessageNode:
        """Create an edited sibling of ``message_id``; the original subtree is untouched.

        The active leaf is not moved; callers select the new branch with
        :meth:`set_leaf` when they want it to become current.
        """
        parts = coerce_content(new_content)
        chat_id = self._chat_id_for(message_id)
        with self._locks.for_chat(chat_id), self._repository.transaction():
            forest = self._load_owned(chat_id, user_id)
            source = forest.get(message_id)
            usage = None
            if source.usage is not None:
                text = "\n".join(p.text for p in parts if p.type == "text")
                usage = derive_for_edit(source.usage, text, self._token_counter)
            node = self._new_node(chat_id, source.parent_id, source.role, parts, usage=usage, edited=True)
            self._repository.save_message(node)
            forest.chat.updated_at = node.created_at
            self._repository.save_chat(forest.chat)
            self._emit(
                chat_id,
                "message.forked",
                {"chat_id": chat_id, "source_message_id": message_id, "message_id": node.id},
            )
        return node

    def delete_subtree(self, message_id: str, new_leaf_id: str | None = None, *, user_id: str) -> list[str]:
        """Delete ``message_id`` and all of its descendants.

        The chat leaf becomes ``new_leaf_id`` when given. Without it, a leaf
        that survives the deletion is kept and a leaf inside the deleted
        subtree is cleared. Returns the deleted ids in breadth-first order.
        """
        chat_id = self._chat_id_for(message_id)
        with self._locks.for_chat(chat_id), self._repository.transaction():
            forest = self._load_owned(chat_id, user_id)
            closure = forest.descendant_closure(message_id)
            doomed = set(closure)

            if new_leaf_id is not None:
                if new_leaf_id not in forest:
                    raise BadRequest(f"Leaf message {new_leaf_id} does not belong to chat {chat_id}")
                if new_leaf_id in doomed:
                    raise BadRequest(f"Leaf message {new_leaf_id} is inside the deleted subtree")
                leaf_id: str | None = new_leaf_id
            elif forest.chat.leaf_message_id in doomed:
                leaf_id = None
            else:
                leaf_id = forest.chat.leaf_message_id

            self._repository.delete_messages(closure)
            forest.chat.leaf_message_id = leaf_id
            forest.chat.updated_at = utc_now()
            self._repository.save_chat(forest.chat)
            self._emit(
                chat_id,
                "messages.deleted",
                {"chat_id": chat_id, "message_ids": closure, "leaf_message_id": leaf_id},
            )
        logger.debug(f"Deleted {len(closure)} message(s) from chat {chat_id}; leaf={leaf_id}")
        return closure

    def set_leaf(self, chat_id: str, message_id: str | None, *, user_id: str) -> ChatRecord:
        with self._locks.for_chat(chat_id), self._repository.transaction():
            forest = self._load_owned(chat_id, user_id)
            if message_id is not None and message_id not in forest:
                raise BadRequest(f"Leaf message {message_id} does not belong to chat {chat_id}")
            forest.chat.leaf_message_id = message_id
            forest.chat.updated_at = utc_now()
            self._repository.save_chat(forest.chat)
            self._emit(chat_id, "chat.leaf_changed", {"chat_id": chat_id, "leaf_message_id": message_id})
        return forest.chat

    def set_reaction(self, message_id: str, reaction: bool | None, *, user_id: str) -> MessageNode:
        chat_id = self._chat_id_for(message_id)
        with self._locks.for_chat(chat_id), self._repository.transaction():
            forest = self._load_owned(chat_id, user_id)
            updated = replace(forest.get(message_id), reaction=reaction)
            self._repository.save_message(updated)
            forest.chat.updated_at = utc_now()
            self._repository.save_chat(forest.chat)
            self._emit(chat_id, "message.reaction", {"message_id": message_id, "reaction": reaction})
        return updated

    # -- queries -------------------------------------------------------------

    def list_messages(self, chat_id: str, *, user_id: str) -> list[MessageNode]:
        forest = self._load_owned(chat_id, user_id)
        return [n for n in forest.nodes() if n.role != "system"]

    def get_system_prompt(self, chat_id: str, *, user_id: str) -> str | None:
        forest = self._load_owned(chat_id, user_id)
        for node in forest.nodes():
            if node.role == "system":
                return node.text
        return None

    def active_path(self, chat_id: str, *, user_id: str) -> list[MessageNode]:
        forest = self._load_owned(chat_id, user_id)
        if forest.chat.leaf_message_id is None:
            return []
        return forest.path_to(forest.chat.leaf_message_id)

    def path_to(self, message_id: str, *, user_id: str) -> list[MessageNode]:
        forest = self._load_owned(self._chat_id_for(message_id), user_id)
        return forest.path_to(message_id)

    def children(self, message_id: str, *, user_id: str) -> list[MessageNode]:
        forest = self._load_owned(self._chat_id_for(message_id), user_id)
        return forest.children(message_id)

    # -- helpers -------------------------------------------------------------

    def _chat_id_for(self, message_id: str) -> str:
        chat_id = self._repository.find_chat_id(message_id)
        if chat_id is None:
            raise NotFound(f"Message not found: {message_id}")
        return chat_id

    def _load_owned(self, chat_id: str, user_id: str) -> ChatForest:
        snapshot = self._repository.load_chat_with_messages(chat_id)
        if snapshot is None:
            raise NotFound(f"Chat not found: {chat_id}")
        if snapshot.chat.user_id != user_id:
            raise Forbidden(f"Chat {chat_id} is not owned by the caller")
        return ChatForest(snapshot)

    def _new_node(
        self,
        chat_id: str,
        parent_id: str | None,
        role: str,
        content: tuple[ContentPart, ...],
        *,
        usage: UsageRecord | None = None,
        edited: bool = False,
    ) -> MessageNode:
        return MessageNode(
            id=str(uuid4()),
            chat_id=chat_id,
            parent_id=parent_id,
            role=role,
            content=content,
            created_at=utc_now(),
            edited=edited,
            usage=usage,
        )

    def _emit(self, chat_id: str, event_type: str, payload: dict) -> None:
        if self._events is not None:
            self._events.emit(chat_id, event_type, payload)
