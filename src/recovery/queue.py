# src/recovery/queue.py — v2
"""Batch error recovery: bounded worker pool over an explicit work queue.

recover_batch_errors() re-attempts the retryable subset of failed items.
Each worker pops an item, waits its backoff, calls process_item(item_id)
and either records the recovery or re-enqueues / finalizes the item.
Setting the abort event stops workers from taking new attempts; the
backoff wait ends early and attempts already in flight finish.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence

from geocopy.core.errors import classify_error
from geocopy.recovery.backoff import (
    DEFAULT_INITIAL_DELAY_MS,
    DEFAULT_JITTER_RATIO,
    DEFAULT_MAX_DELAY_MS,
    get_retry_delay,
)
from geocopy.recovery.models import BatchErrorItem, RecoveryState

if TYPE_CHECKING:
    from geocopy.config.settings import Settings

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 3
CONCURRENT_RECOVERIES = 3

ProcessItemFn = Callable[[str], Awaitable[Any]]


class RecoveryInProgressError(RuntimeError):
    """recover() was called while the same queue was already recovering."""


async def recover_batch_errors(
    failed_items: Sequence[BatchErrorItem],
    process_item: ProcessItemFn,
    *,
    max_retries: int = MAX_RETRY_ATTEMPTS,
    concurrency: int = CONCURRENT_RECOVERIES,
    initial_delay_ms: float = DEFAULT_INITIAL_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    jitter_ratio: float = DEFAULT_JITTER_RATIO,
    on_progress: Callable[[int, int], None] | None = None,
    on_item_recovered: Callable[[str], None] | None = None,
    on_item_failed: Callable[[BatchErrorItem], None] | None = None,
    job_id: str | None = None,
    abort: asyncio.Event | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> RecoveryState:
    """Retry the retryable subset of failed_items.

    Args:
        failed_items: Items to recover. Not mutated.
        process_item: Coroutine re-running one item; its return value is
            stored in RecoveryState.results on success.
        max_retries: Items with retry_count >= max_retries are not attempted.
        concurrency: Number of worker tasks.
        on_progress: Called with (recovered_count, total_items) after every
            attempt.
        abort: When set, no further attempts are dispatched.

    Returns:
        RecoveryState with status "completed" when no failed items remain,
        otherwise "failed", or "aborted" when abort stopped the run
        with items left.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    state = RecoveryState(
        job_id=job_id or f"recovery_{uuid.uuid4().hex[:12]}",
        total_items=len(failed_items),
        failed_items=[item.model_copy() for item in failed_items],
        status="recovering",
    )

    retryable = [
        item for item in state.failed_items
        if item.retryable and item.retry_count < max_retries
    ]
    if not retryable:
        state.status = "completed" if not state.failed_items else "failed"
        return state

    queue: asyncio.Queue[BatchErrorItem] = asyncio.Queue()
    for item in retryable:
        queue.put_nowait(item)

    def _aborted() -> bool:
        return abort is not None and abort.is_set()

    async def _backoff(delay_s: float) -> None:
        if abort is None:
            await sleep(delay_s)
            return
        sleeper = asyncio.ensure_future(sleep(delay_s))
        waiter = asyncio.ensure_future(abort.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not sleeper.done():
                sleeper.cancel()
        if sleeper.done() and not sleeper.cancelled():
            sleeper.result()

    def _replace_failed(item: BatchErrorItem) -> None:
        for i, existing in enumerate(state.failed_items):
            if existing.item_id == item.item_id:
                state.failed_items[i] = item
                return

    async def _worker(worker_id: int) -> None:
        while not _aborted():
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            delay_ms = get_retry_delay(
                item.error_details,
                item.retry_count,
                initial_delay_ms,
                max_delay_ms,
                jitter_ratio,
                rng,
            )
            logger.debug(
                "Recovery worker %d: %s attempt %d after %.0fms",
                worker_id, item.item_id, item.retry_count + 1, delay_ms,
            )
            await _backoff(delay_ms / 1000)
            if _aborted():
                logger.debug("Recovery worker %d: aborted before %s", worker_id, item.item_id)
                return

            try:
                payload = await process_item(item.item_id)
            except Exception as e:
                details = classify_error(e)
                retry_count = item.retry_count + 1
                updated = item.model_copy(
                    update={
                        "error": details.message,
                        "error_details": details,
                        "retry_count": retry_count,
                        "retryable": details.retryable and retry_count < max_retries,
                        "last_attempt": datetime.now(timezone.utc),
                    }
                )
                _replace_failed(updated)
                if updated.retryable:
                    queue.put_nowait(updated)
                else:
                    logger.warning(
                        "Recovery of %s gave up after %d retries (%s)",
                        item.item_id, retry_count, details.category.value,
                    )
                    if on_item_failed is not None:
                        on_item_failed(updated)
            else:
                state.failed_items = [
                    f for f in state.failed_items if f.item_id != item.item_id
                ]
                state.recovered_items.append(item.item_id)
                state.results[item.item_id] = payload
                logger.info("Recovered %s after %d retries", item.item_id, item.retry_count + 1)
                if on_item_recovered is not None:
                    on_item_recovered(item.item_id)

            if on_progress is not None:
                on_progress(len(state.recovered_items), state.total_items)

    started = time.monotonic()
    workers = [
        asyncio.create_task(_worker(i), name=f"recovery-worker-{i}")
        for i in range(min(concurrency, len(retryable)))
    ]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for task in workers:
            task.cancel()
        raise

    if not state.failed_items:
        state.status = "completed"
    else:
        state.status = "aborted" if _aborted() else "failed"
    logger.info(
        "Recovery %s finished: %d recovered, %d failed in %.2fs",
        state.job_id,
        len(state.recovered_items),
        len(state.failed_items),
        time.monotonic() - started,
    )
    return state


class RetryQueue:
    """Accumulates failures and recovers them in one batch.

    One recover() may run at a time per instance; a concurrent call raises
    RecoveryInProgressError.
    """

    def __init__(self, process_item: ProcessItemFn, **options: Any) -> None:
        self._process_item = process_item
        self._options = options
        self._failed: list[BatchErrorItem] = []
        self._recovering = False

    @classmethod
    def from_settings(
        cls, process_item: ProcessItemFn, settings: Settings, **options: Any
    ) -> RetryQueue:
        """Queue using the configured retry policy and recovery concurrency."""
        configured: dict[str, Any] = {
            "max_retries": settings.recovery_max_retries,
            "concurrency": settings.recovery_concurrency,
            "initial_delay_ms": settings.retry_initial_delay_ms,
            "max_delay_ms": settings.retry_max_delay_ms,
            "jitter_ratio": settings.retry_jitter_ratio,
        }
        configured.update(options)
        return cls(process_item, **configured)

    def add(self, item_id: str, error: BaseException) -> BatchErrorItem:
        item = BatchErrorItem.from_exception(item_id, error)
        self._failed.append(item)
        return item

    @property
    def failed_items(self) -> list[BatchErrorItem]:
        return list(self._failed)

    @property
    def retryable_count(self) -> int:
        return sum(1 for item in self._failed if item.retryable)

    @property
    def recovering(self) -> bool:
        return self._recovering

    async def recover(self) -> RecoveryState:
        if self._recovering:
            raise RecoveryInProgressError("Recovery already in progress")
        self._recovering = True
        try:
            state = await recover_batch_errors(
                self._failed, self._process_item, **self._options
            )
            self._failed = list(state.failed_items)
            return state
        finally:
            self._recovering = False

    def clear(self) -> None:
        self._failed.clear()
