from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable, Literal

BASE_DELAY_SECONDS = 30.0
MAX_DELAY_SECONDS = 6 * 60 * 60.0
DEFAULT_RETRY_MAX = 5

ErrorClass = Literal["terminal", "retryable"]

# Retrying these can never succeed.
TERMINAL_ERROR_CODES = frozenset(
    {
        "invalid_recipient",
        "missing_recipient",
        "missing_email",
        "missing_phone",
        "empty_message",
        "unknown_channel",
        "client_not_found",
        "client_unsubscribed",
    }
)


def next_delay(
    attempts: int,
    *,
    base_seconds: float = BASE_DELAY_SECONDS,
    max_seconds: float = MAX_DELAY_SECONDS,
    rng: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff with jitter, in seconds.

    ``min(max, base * 2**attempts)`` scaled by a factor drawn from ``[0.5, 1.5]``,
    then capped again so the jittered value never exceeds ``max_seconds``.
    """
    exponent = max(0, attempts)
    # 2**exponent overflows float math long before it matters; cap the exponent.
    raw = base_seconds * (2 ** min(exponent, 64))
    capped = min(max_seconds, raw)
    jitter = 0.5 + rng()
    return min(max_seconds, capped * jitter)


def classify_error(code: str | None) -> ErrorClass:
    if code is not None and code.strip().lower() in TERMINAL_ERROR_CODES:
        return "terminal"
    return "retryable"


def is_retryable(code: str | None) -> bool:
    return classify_error(code) == "retryable"


@dataclass(frozen=True)
class FailureDecision:
    action: Literal["retry", "fail"]
    delay_seconds: float | None = None


def decide_failure(
    code: str | None,
    *,
    retry_count: int,
    retry_max: int = DEFAULT_RETRY_MAX,
    base_seconds: float = BASE_DELAY_SECONDS,
    max_seconds: float = MAX_DELAY_SECONDS,
    rng: Callable[[], float] = random.random,
    retryable: bool | None = None,
) -> FailureDecision:
    """Retry or give up on a failed send.

    ``retryable`` is the transport's own verdict when it reported one; ``False``
    is final even for codes outside ``TERMINAL_ERROR_CODES``.
    """
    if retryable is False or classify_error(code) == "terminal":
        return FailureDecision(action="fail")
    if retry_count >= retry_max:
        return FailureDecision(action="fail")
    delay = next_delay(retry_count, base_seconds=base_seconds, max_seconds=max_seconds, rng=rng)
    return FailureDecision(action="retry", delay_seconds=delay)
