from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from typing import Callable

from loguru import logger

from forkchat.errors import (
    BadRequest,
    IncompleteUsage,
    ProtocolError,
    StreamCancelled,
    UpstreamError,
    UpstreamTimeout,
)
from forkchat.memory.tree import MessageTree
from forkchat.models import MessageNode, UsageRecord
from forkchat.streaming.client import CompletionClient
from forkchat.streaming.normalizer import NormalizedDelta
from forkchat.usage import TokenCounter, estimate_usage, finalize_usage

_FAILURE_FINISH_REASONS: tuple[tuple[type[Exception], str], ...] = (
    (UpstreamTimeout, "timeout"),
    (ProtocolError, "protocol_error"),
    (StreamCancelled, "cancelled"),
    (UpstreamError, "upstream_error"),
)


def to_provider_messages(path: list[MessageNode]) -> list[dict]:
    """Convert a root-to-leaf chain into chat-completion ``messages``."""
    out: list[dict] = []
    for node in path:
        parts: list[str] = []
        for part in node.content:
            if part.type == "text":
                parts.append(part.text)
            else:
                parts.append(f"[attachment:{part.blob_id}]")
        out.append({"role": node.role, "content": "\n".join(parts)})
    return out


class TranscriptWriter:
    """Runs one assistant turn and commits the reply into the message tree.

    A stream that fails after producing text still commits that text, with an
    unreliable usage record, before the error is re-raised. This covers
    timeouts, protocol errors, cancellation and in-stream upstream errors.
    """

    def __init__(
        self,
        tree: MessageTree,
        client: CompletionClient,
        *,
        token_counter: TokenCounter | None = None,
        require_usage: bool = False,
    ):
        self._tree = tree
        self._client = client
        self._token_counter = token_counter
        self._require_usage = require_usage

    async def send(
        self,
        chat_id: str,
        text: str,
        *,
        user_id: str,
        cancel: asyncio.Event | None = None,
        on_delta: Callable[[NormalizedDelta], None] | None = None,
    ) -> MessageNode:
        """Append a user message at the active leaf and stream the reply to it."""
        path = self._tree.active_path(chat_id, user_id=user_id)
        parent_id = path[-1].id if path else None
        user_node = self._tree.append(chat_id, parent_id, "user", text, user_id=user_id)
        return await self.reply(chat_id, user_node.id, user_id=user_id, cancel=cancel, on_delta=on_delta)

    async def reply(
        self,
        chat_id: str,
        parent_id: str,
        *,
        user_id: str,
        cancel: asyncio.Event | None = None,
        on_delta: Callable[[NormalizedDelta], None] | None = None,
    ) -> MessageNode:
        path = self._tree.path_to(parent_id, user_id=user_id)
        if path[-1].chat_id != chat_id:
            raise BadRequest(f"Message {parent_id} does not belong to chat {chat_id}")
        messages = to_provider_messages(path)

        deltas: list[NormalizedDelta] = []
        text_parts: list[str] = []
        started = time.monotonic()
        first_response_ms = 0

        try:
            async with aclosing(self._client.stream(messages, cancel=cancel)) as stream:
                async for delta in stream:
                    if delta.text and not first_response_ms:
                        first_response_ms = _elapsed_ms(started)
                    deltas.append(delta)
                    text_parts.append(delta.text)
                    if on_delta is not None:
                        on_delta(delta)
        except (UpstreamTimeout, ProtocolError, StreamCancelled, UpstreamError) as ex:
            text = "".join(text_parts)
            if text:
                usage = estimate_usage(
                    deltas,
                    text,
                    self._token_counter,
                    finish_reason=_failure_reason(ex),
                    first_response_duration_ms=first_response_ms,
                    total_duration_ms=_elapsed_ms(started),
                )
                node = self._tree.append(chat_id, parent_id, "assistant", text, user_id=user_id, usage=usage)
                logger.warning(f"Stream failed ({type(ex).__name__}); kept partial reply {node.id} ({len(text)} chars)")
            raise

        text = "".join(text_parts)
        usage = self._finalize(deltas, text, first_response_ms, _elapsed_ms(started))
        node = self._tree.append(chat_id, parent_id, "assistant", text, user_id=user_id, usage=usage)
        logger.debug(
            f"Reply committed: message={node.id}, input_tokens={usage.input_tokens}, "
            f"output_tokens={usage.output_tokens}, reliable={usage.is_usage_reliable}"
        )
        return node

    def _finalize(self, deltas: list[NormalizedDelta], text: str, first_ms: int, total_ms: int) -> UsageRecord:
        try:
            return finalize_usage(deltas, first_response_duration_ms=first_ms, total_duration_ms=total_ms)
        except IncompleteUsage:
            if self._require_usage:
                raise
            logger.warning("Stream ended without usage; recording an estimate")
            return estimate_usage(
                deltas,
                text,
                self._token_counter,
                finish_reason="success",
                first_response_duration_ms=first_ms,
                total_duration_ms=total_ms,
            )


def _failure_reason(ex: Exception) -> str:
    for exc_type, reason in _FAILURE_FINISH_REASONS:
        if isinstance(ex, exc_type):
            return reason
    return "error"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
