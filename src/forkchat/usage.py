"""Token accounting for streamed and edited messages."""

from __future__ import annotations

from typing import Iterable, Protocol, runtime_checkable

import tiktoken

from forkchat.errors import IncompleteUsage
from forkchat.models import UsageRecord, utc_now
from forkchat.streaming.normalizer import NormalizedDelta, UsageSnapshot


@runtime_checkable
class TokenCounter(Protocol):
    def count(self, text: str) -> int: ...


class TiktokenCounter:
    """Counts tokens with a local tiktoken encoding (cl100k_base by default)."""

    def __init__(self, encoding_name: str = "cl100k_base"):
        self._encoding_name = encoding_name
        self._encoding = None

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self._encoding is None:
            self._encoding = tiktoken.get_encoding(self._encoding_name)
        return len(self._encoding.encode(text))


def last_usage(deltas: Iterable[NormalizedDelta]) -> UsageSnapshot | None:
    snapshot: UsageSnapshot | None = None
    for delta in deltas:
        if delta.usage is not None:
            snapshot = delta.usage
    return snapshot


def derive_for_edit(base: UsageRecord, new_text: str, counter: TokenCounter) -> UsageRecord:
    """Estimate usage for content that was edited without asking the provider again.

    The prompt is unchanged, so input tokens carry over; output tokens are
    recounted from the new text. Timing, cost and reasoning fields are zeroed
    and the record is flagged as unreliable.
    """
    return UsageRecord(
        input_tokens=base.input_tokens,
        output_tokens=counter.count(new_text),
        reasoning_tokens=0,
        is_usage_reliable=False,
        preprocess_duration_ms=0,
        first_response_duration_ms=0,
        total_duration_ms=0,
        input_cost=0.0,
        output_cost=0.0,
        finish_reason="success",
        created_at=utc_now(),
    )


def finalize_usage(
    deltas: Iterable[NormalizedDelta],
    *,
    finish_reason: str = "success",
    first_response_duration_ms: int = 0,
    total_duration_ms: int = 0,
) -> UsageRecord:
    """Fold a stream's deltas; the last reported usage snapshot is authoritative."""
    snapshot = last_usage(deltas)
    if snapshot is None:
        raise IncompleteUsage("Stream ended without a usage report")
    return UsageRecord(
        input_tokens=snapshot.input_tokens,
        output_tokens=snapshot.output_tokens,
        is_usage_reliable=True,
        first_response_duration_ms=first_response_duration_ms,
        total_duration_ms=total_duration_ms,
        finish_reason=finish_reason,
        created_at=utc_now(),
    )


def estimate_usage(
    deltas: Iterable[NormalizedDelta],
    text: str,
    counter: TokenCounter | None,
    *,
    finish_reason: str,
    first_response_duration_ms: int = 0,
    total_duration_ms: int = 0,
) -> UsageRecord:
    """Best-effort record for a stream that failed or never reported usage."""
    snapshot = last_usage(deltas)
    input_tokens = snapshot.input_tokens if snapshot is not None else 0
    if counter is not None:
        output_tokens = counter.count(text)
    elif snapshot is not None:
        output_tokens = snapshot.output_tokens
    else:
        output_tokens = 0
    return UsageRecord(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        is_usage_reliable=False,
        first_response_duration_ms=first_response_duration_ms,
        total_duration_ms=total_duration_ms,
        finish_reason=finish_reason,
        created_at=utc_now(),
    )
