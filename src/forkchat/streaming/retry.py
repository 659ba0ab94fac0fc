from __future__ import annotations

from loguru import logger
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential


def _on_retry(retry_state):
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.0f}s (attempt {attempt})...")


def default_retry_kwargs(
    exception_types: tuple[type[BaseException], ...],
    *,
    attempts: int = 5,
    wait_min: float = 10,
    wait_max: float = 320,
) -> dict:
    return {
        "retry": retry_if_exception_type(exception_types),
        "wait": wait_exponential(multiplier=wait_min, min=wait_min, max=wait_max),
        "stop": stop_after_attempt(max(1, attempts)),
        "before_sleep": _on_retry,
        "reraise": True,
    }
