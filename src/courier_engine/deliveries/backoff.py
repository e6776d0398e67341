"""Retry eligibility and delay computation for delivery attempts."""

import random
from typing import Callable

from courier_engine.endpoints.schemas import RetryPolicy

MAX_JITTER_MS = 1000


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    jitter_source: Callable[[], float] = random.random,
) -> int:
    """Delay in milliseconds before retrying after failed attempt number ``attempt``.

    linear: ``initial_delay * attempt``; exponential: ``initial_delay * 2^(attempt-1)``.
    Clamped to ``max_delay``, then jitter in ``[0, 1000)`` ms is added if enabled.
    """
    attempt = max(1, attempt)
    if policy.backoff_strategy == "linear":
        delay = policy.initial_delay * attempt
    else:
        delay = policy.initial_delay * (2 ** (attempt - 1))
    delay = min(delay, policy.max_delay)
    if policy.jitter:
        delay += int(jitter_source() * MAX_JITTER_MS)
    return delay


def is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def is_retryable_status(status_code: int, policy: RetryPolicy) -> bool:
    return status_code in policy.retry_on_status
