from __future__ import annotations

from collections.abc import Awaitable, Callable

Handler = Callable[[list[str]], Awaitable[None]]


class CommandRouter:
    """Dispatches ``/command arg...`` input lines to registered handlers."""

    def __init__(self, *, on_unknown: Callable[[str], None]) -> None:
        self._handlers: dict[str, Handler] = {}
        self._on_unknown = on_unknown

    def register(self, name: str, handler: Handler) -> None:
        self._handlers[name.lstrip("/")] = handler

    @property
    def names(self) -> list[str]:
        return sorted(self._handlers)

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        name, _, rest = trimmed[1:].partition(" ")
        handler = self._handlers.get(name)
        if handler is None:
            self._on_unknown(trimmed)
            return True
        await handler(rest.split())
        return True
