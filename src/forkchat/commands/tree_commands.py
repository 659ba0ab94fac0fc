from __future__ import annotations

from forkchat.errors import BadRequest
from forkchat.memory.tree import MessageTree
from forkchat.models import MessageNode

_REACTIONS = {"up": True, "down": False, "clear": None}

HELP_LINES = [
    "/tree                      show the message tree (* marks the active branch)",
    "/edit <id> <text>          replace a message's text in place",
    "/fork <id> <text>          add an edited sibling and make it the active leaf",
    "/delete <id> [leaf-id]     delete a message and its replies",
    "/leaf <id>                 switch the active branch",
    "/react <id> up|down|clear  set a reaction",
    "/help                      show this help",
]


class TreeCommands:
    """Slash commands that inspect and mutate the active chat's message tree."""

    def __init__(self, tree: MessageTree, chat_id: str, user_id: str, *, line_prefix: str = "", short_id_len: int = 8):
        self._tree = tree
        self._chat_id = chat_id
        self._user_id = user_id
        self._line_prefix = line_prefix
        self._short_id_len = short_id_len

    def short_id(self, value: str) -> str:
        return value[: self._short_id_len]

    def resolve_id(self, prefix: str) -> str:
        """Expand a short id prefix to a full message id in the active chat."""
        forest = self._tree.load(self._chat_id, user_id=self._user_id)
        matches = [n.id for n in forest.nodes() if n.id.startswith(prefix)]
        if not matches:
            raise BadRequest(f"No message matches {prefix!r}")
        if len(matches) > 1:
            raise BadRequest(f"Ambiguous message id {prefix!r} ({len(matches)} matches)")
        return matches[0]

    def render_tree(self) -> list[str]:
        forest = self._tree.load(self._chat_id, user_id=self._user_id)
        active: set[str] = set()
        if forest.chat.leaf_message_id is not None:
            active = {n.id for n in forest.path_to(forest.chat.leaf_message_id)}
        lines: list[str] = []
        stack = [(node, 0) for node in reversed(forest.children(None))]
        while stack:
            node, depth = stack.pop()
            lines.append(self._format_node(node, depth, node.id in active))
            for child in reversed(forest.children(node.id)):
                stack.append((child, depth + 1))
        return lines or [f"{self._line_prefix}(empty chat)"]

    def _format_node(self, node: MessageNode, depth: int, is_active: bool) -> str:
        marker = "*" if is_active else " "
        flags = []
        if node.edited:
            flags.append("edited")
        if node.reaction is not None:
            flags.append("+1" if node.reaction else "-1")
        if node.usage is not None:
            flags.append(f"out={node.usage.output_tokens}")
        suffix = f" ({', '.join(flags)})" if flags else ""
        preview = " ".join(node.text.split())
        if len(preview) > 60:
            preview = preview[:57] + "..."
        indent = "  " * depth
        return f"{self._line_prefix}{marker} {indent}[{self.short_id(node.id)}] {node.role}: {preview}{suffix}"

    async def on_tree(self, args: list[str]) -> None:
        for line in self.render_tree():
            print(line)

    async def on_edit(self, args: list[str]) -> None:
        message_id, text = self._id_and_text(args, "/edit")
        self._tree.edit_in_place(message_id, text, user_id=self._user_id)
        print(f"{self._line_prefix}Edited [{self.short_id(message_id)}]")

    async def on_fork(self, args: list[str]) -> None:
        message_id, text = self._id_and_text(args, "/fork")
        node = self._tree.edit_and_fork(message_id, text, user_id=self._user_id)
        self._tree.set_leaf(self._chat_id, node.id, user_id=self._user_id)
        print(f"{self._line_prefix}Forked [{self.short_id(message_id)}] -> [{self.short_id(node.id)}]")

    async def on_delete(self, args: list[str]) -> None:
        if not args:
            raise BadRequest("Usage: /delete <id> [leaf-id]")
        message_id = self.resolve_id(args[0])
        leaf_id = self.resolve_id(args[1]) if len(args) > 1 else None
        deleted = self._tree.delete_subtree(message_id, leaf_id, user_id=self._user_id)
        print(f"{self._line_prefix}Deleted {len(deleted)} message(s)")

    async def on_leaf(self, args: list[str]) -> None:
        if not args:
            raise BadRequest("Usage: /leaf <id>")
        message_id = self.resolve_id(args[0])
        self._tree.set_leaf(self._chat_id, message_id, user_id=self._user_id)
        print(f"{self._line_prefix}Active leaf is now [{self.short_id(message_id)}]")

    async def on_react(self, args: list[str]) -> None:
        if len(args) != 2 or args[1] not in _REACTIONS:
            raise BadRequest("Usage: /react <id> up|down|clear")
        message_id = self.resolve_id(args[0])
        self._tree.set_reaction(message_id, _REACTIONS[args[1]], user_id=self._user_id)
        print(f"{self._line_prefix}Reaction {args[1]} on [{self.short_id(message_id)}]")

    async def on_help(self, args: list[str]) -> None:
        for line in HELP_LINES:
            print(f"{self._line_prefix}{line}")

    def handlers(self) -> dict:
        return {
            "tree": self.on_tree,
            "edit": self.on_edit,
            "fork": self.on_fork,
            "delete": self.on_delete,
            "leaf": self.on_leaf,
            "react": self.on_react,
            "help": self.on_help,
        }

    def _id_and_text(self, args: list[str], usage: str) -> tuple[str, str]:
        if len(args) < 2:
            raise BadRequest(f"Usage: {usage} <id> <text>")
        return self.resolve_id(args[0]), " ".join(args[1:])
