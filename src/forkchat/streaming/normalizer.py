from __future__ import annotations

import json
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator

from loguru import logger

from forkchat.errors import ProtocolError, UpstreamError
from forkchat.streaming.frames import EVENT, Frame

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class UsageSnapshot:
    input_tokens: int
    output_tokens: int
    total_tokens: int


@dataclass(frozen=True)
class NormalizedDelta:
    text: str
    usage: UsageSnapshot | None = None


def _token_count(usage: dict, key: str) -> int | None:
    value = usage.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ProtocolError(f"Invalid {key} in usage payload: {value!r}")
    return value


def _parse_usage(usage: object) -> UsageSnapshot | None:
    if usage is None:
        return None
    if not isinstance(usage, dict):
        raise ProtocolError(f"Usage payload is not an object: {usage!r}")

    input_tokens = _token_count(usage, "prompt_tokens") or 0
    output_tokens = _token_count(usage, "completion_tokens") or 0
    total_tokens = _token_count(usage, "total_tokens")
    if total_tokens is None:
        total_tokens = input_tokens + output_tokens
    elif total_tokens != input_tokens + output_tokens:
        # Provider total is kept as reported.
        logger.warning(
            f"Provider usage total mismatch: total_tokens={total_tokens}, "
            f"prompt_tokens={input_tokens}, completion_tokens={output_tokens}"
        )
    return UsageSnapshot(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total_tokens)


def normalize_payload(data: str) -> NormalizedDelta:
    """Turn one chat-completion chunk document into a :class:`NormalizedDelta`."""
    try:
        doc = json.loads(data)
    except json.JSONDecodeError as ex:
        raise ProtocolError(f"Malformed JSON in stream frame: {data[:200]!r}") from ex
    if not isinstance(doc, dict):
        raise ProtocolError(f"Stream frame is not a JSON object: {data[:200]!r}")
    if "error" in doc:
        raise UpstreamError(200, data)

    choices = doc.get("choices") or []
    if not isinstance(choices, list):
        raise ProtocolError(f"'choices' is not a list: {data[:200]!r}")

    text = ""
    usage_source = doc.get("usage")
    if choices:
        choice = choices[0]
        if not isinstance(choice, dict):
            raise ProtocolError(f"Choice is not an object: {data[:200]!r}")
        delta = choice.get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        if content is not None and not isinstance(content, str):
            raise ProtocolError(f"Delta content is not a string: {data[:200]!r}")
        text = content or ""
        if choice.get("usage") is not None:
            usage_source = choice["usage"]

    return NormalizedDelta(text=text, usage=_parse_usage(usage_source))


async def normalize_frames(frames: AsyncIterable[Frame]) -> AsyncIterator[NormalizedDelta]:
    """Map parsed frames to normalized deltas, ending at the ``[DONE]`` sentinel."""
    async with aclosing(frames) as source:
        async for frame in source:
            if frame.kind != EVENT or not frame.data:
                continue
            if frame.data == DONE_SENTINEL:
                return
            yield normalize_payload(frame.data)
