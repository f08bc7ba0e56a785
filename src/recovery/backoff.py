# src/recovery/backoff.py — v1
"""Exponential backoff with bounded random jitter.

delay(attempt) = min(initial * 2**attempt, max), plus jitter drawn
uniformly from [0, jitter_ratio * delay]. All values are milliseconds.
"""

from __future__ import annotations

import random
from typing import Callable

from geocopy.core.errors import ErrorDetails

DEFAULT_INITIAL_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30_000
DEFAULT_JITTER_RATIO = 0.3


def backoff_base(
    attempt: int,
    initial_delay_ms: float = DEFAULT_INITIAL_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
) -> float:
    """Capped exponential delay for a 0-based attempt, without jitter."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    # Cap the exponent as well so huge attempt counts cannot overflow.
    exponent = min(attempt, 64)
    return float(min(initial_delay_ms * (2**exponent), max_delay_ms))


def compute_backoff(
    attempt: int,
    initial_delay_ms: float = DEFAULT_INITIAL_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    jitter_ratio: float = DEFAULT_JITTER_RATIO,
    rng: Callable[[], float] = random.random,
) -> float:
    """Backoff delay in milliseconds including jitter."""
    delay = backoff_base(attempt, initial_delay_ms, max_delay_ms)
    return delay + rng() * jitter_ratio * delay


def get_retry_delay(
    details: ErrorDetails | None,
    attempt: int,
    initial_delay_ms: float = DEFAULT_INITIAL_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    jitter_ratio: float = DEFAULT_JITTER_RATIO,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before the next attempt of a failed operation.

    A retry_after_ms carried by the error wins over the computed backoff
    (capped at max_delay_ms).
    """
    if details is not None and details.retry_after_ms is not None:
        return float(min(details.retry_after_ms, max_delay_ms))
    return compute_backoff(attempt, initial_delay_ms, max_delay_ms, jitter_ratio, rng)
