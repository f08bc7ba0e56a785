# src/recovery/retry.py — v1
"""Single-operation retry with exponential backoff.

Used outside batch contexts. Non-retryable errors propagate immediately;
retryable ones are retried until max_attempts is reached.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

from geocopy.core.errors import ErrorDetails, classify_error
from geocopy.recovery.backoff import (
    DEFAULT_INITIAL_DELAY_MS,
    DEFAULT_JITTER_RATIO,
    DEFAULT_MAX_DELAY_MS,
    get_retry_delay,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


class RetryExhaustedError(Exception):
    """All attempts failed with retryable errors."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        self.details: ErrorDetails = classify_error(last_error)
        super().__init__(
            f"Operation '{operation}' failed after {attempts} attempts "
            f"({self.details.category.value}): {last_error}"
        )


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay_ms: float = DEFAULT_INITIAL_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    jitter_ratio: float = DEFAULT_JITTER_RATIO,
    on_retry: Callable[[int, BaseException], None] | None = None,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> Any:
    """Execute an async operation with retry logic.

    Args:
        operation: Zero-argument coroutine factory.
        max_attempts: Total attempts including the first one.
        on_retry: Called with (attempt_number, error) before each wait.

    Raises:
        RetryExhaustedError: If every attempt failed with a retryable error.
        Exception: The original error when it is not retryable.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    for attempt in range(max_attempts):
        try:
            return await operation()
        except Exception as e:
            details = classify_error(e)
            if not details.retryable:
                raise
            if attempt == max_attempts - 1:
                raise RetryExhaustedError(name, attempt + 1, e) from e

            delay_ms = get_retry_delay(
                details, attempt, initial_delay_ms, max_delay_ms, jitter_ratio, rng
            )
            logger.warning(
                "%s: %s (attempt %d/%d), retrying in %.1fs",
                name, details.category.value, attempt + 1, max_attempts,
                delay_ms / 1000,
            )
            if on_retry is not None:
                on_retry(attempt + 1, e)
            await sleep(delay_ms / 1000)

    raise AssertionError("unreachable")
