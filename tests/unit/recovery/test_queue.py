# tests/unit/recovery/test_queue.py — v2
"""Tests for recovery/queue.py — batch recovery worker pool."""

from __future__ import annotations

import asyncio

import pytest

from geocopy.core.errors import Errors
from geocopy.recovery.models import BatchErrorItem
from geocopy.recovery.queue import (
    RecoveryInProgressError,
    RetryQueue,
    recover_batch_errors,
)


def _item(item_id: str, error: BaseException | None = None, **kwargs) -> BatchErrorItem:
    item = BatchErrorItem.from_exception(item_id, error or ConnectionError("reset"))
    return item.model_copy(update=kwargs) if kwargs else item


class FlakyProcessor:
    """Fails each item a scripted number of times, then succeeds."""

    def __init__(self, failures: dict[str, list[BaseException]] | None = None, delay: float = 0.0):
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, item_id: str):
        self.calls.append(item_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            pending = self.failures.get(item_id)
            if pending:
                raise pending.pop(0)
            return {"item": item_id}
        finally:
            self.in_flight -= 1


class TestRecoverBatchErrors:
    @pytest.mark.asyncio
    async def test_all_recovered(self, recording_sleep):
        items = [_item("a"), _item("b")]
        process = FlakyProcessor()
        state = await recover_batch_errors(items, process, sleep=recording_sleep)
        assert state.status == "completed"
        assert sorted(state.recovered_items) == ["a", "b"]
        assert state.failed_items == []
        assert state.results["a"] == {"item": "a"}

    @pytest.mark.asyncio
    async def test_input_not_mutated(self, recording_sleep):
        items = [_item("a")]
        await recover_batch_errors(items, FlakyProcessor(), sleep=recording_sleep)
        assert items[0].retry_count == 0

    @pytest.mark.asyncio
    async def test_retries_until_success(self, recording_sleep):
        process = FlakyProcessor({"a": [ConnectionError("x"), ConnectionError("y")]})
        state = await recover_batch_errors(
            [_item("a")], process, sleep=recording_sleep, rng=lambda: 0.0
        )
        assert state.status == "completed"
        assert process.calls == ["a", "a", "a"]
        assert recording_sleep.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_gives_up_at_max_retries(self, recording_sleep):
        process = FlakyProcessor({"a": [ConnectionError(str(i)) for i in range(5)]})
        failed: list[BatchErrorItem] = []
        state = await recover_batch_errors(
            [_item("a")], process, max_retries=3,
            on_item_failed=failed.append, sleep=recording_sleep,
        )
        assert state.status == "failed"
        assert len(process.calls) == 3
        item = state.failed_item("a")
        assert item.retry_count == 3
        assert item.retryable is False
        assert failed[0].item_id == "a"

    @pytest.mark.asyncio
    async def test_fatal_error_stops_retrying(self, recording_sleep):
        process = FlakyProcessor({"a": [Errors.validation("bad")]})
        state = await recover_batch_errors([_item("a")], process, sleep=recording_sleep)
        assert state.status == "failed"
        assert process.calls == ["a"]
        assert state.failed_item("a").error_details.code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_non_retryable_items_skipped(self, recording_sleep):
        items = [_item("a"), _item("b", Errors.unauthorized())]
        process = FlakyProcessor()
        state = await recover_batch_errors(items, process, sleep=recording_sleep)
        assert process.calls == ["a"]
        assert state.recovered_items == ["a"]
        assert state.status == "failed"
        assert state.failed_item("b") is not None

    @pytest.mark.asyncio
    async def test_nothing_retryable(self, recording_sleep):
        items = [_item("a", Errors.forbidden())]
        process = FlakyProcessor()
        state = await recover_batch_errors(items, process, sleep=recording_sleep)
        assert state.status == "failed"
        assert process.calls == []

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        state = await recover_batch_errors([], FlakyProcessor())
        assert state.status == "completed"
        assert state.total_items == 0

    @pytest.mark.asyncio
    async def test_exhausted_items_skipped(self, recording_sleep):
        items = [_item("a", retry_count=3)]
        process = FlakyProcessor()
        state = await recover_batch_errors(items, process, max_retries=3, sleep=recording_sleep)
        assert process.calls == []
        assert state.status == "failed"

    @pytest.mark.asyncio
    async def test_retry_after_overrides_backoff(self, recording_sleep):
        items = [_item("a", Errors.rate_limit(5000))]
        await recover_batch_errors(items, FlakyProcessor(), sleep=recording_sleep)
        assert recording_sleep.delays == [5.0]

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        async def no_sleep(_delay):
            return None

        items = [_item(str(i)) for i in range(8)]
        process = FlakyProcessor(delay=0.01)
        state = await recover_batch_errors(items, process, concurrency=3, sleep=no_sleep)
        assert state.status == "completed"
        assert process.max_in_flight == 3

    @pytest.mark.asyncio
    async def test_progress_callbacks(self, recording_sleep):
        progress: list[tuple[int, int]] = []
        recovered: list[str] = []
        items = [_item("a"), _item("b")]
        await recover_batch_errors(
            items, FlakyProcessor(), concurrency=1,
            on_progress=lambda done, total: progress.append((done, total)),
            on_item_recovered=recovered.append,
            sleep=recording_sleep,
        )
        assert progress == [(1, 2), (2, 2)]
        assert recovered == ["a", "b"]

    @pytest.mark.asyncio
    async def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            await recover_batch_errors([_item("a")], FlakyProcessor(), concurrency=0)

    @pytest.mark.asyncio
    async def test_job_id(self, recording_sleep):
        state = await recover_batch_errors(
            [_item("a")], FlakyProcessor(), job_id="run:faq", sleep=recording_sleep
        )
        assert state.job_id == "run:faq"

    @pytest.mark.asyncio
    async def test_abort_during_backoff_stops_attempts(self):
        abort = asyncio.Event()

        async def aborting_sleep(_delay):
            abort.set()

        process = FlakyProcessor()
        state = await recover_batch_errors(
            [_item("a"), _item("b")], process, concurrency=1, abort=abort, sleep=aborting_sleep
        )
        assert process.calls == []
        assert state.status == "aborted"
        assert [i.item_id for i in state.failed_items] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_abort_ends_backoff_wait(self):
        abort = asyncio.Event()
        process = FlakyProcessor()
        task = asyncio.create_task(
            recover_batch_errors([_item("a")], process, initial_delay_ms=60_000, abort=abort)
        )
        await asyncio.sleep(0.01)
        abort.set()
        state = await asyncio.wait_for(task, timeout=1)
        assert state.status == "aborted"
        assert process.calls == []

    @pytest.mark.asyncio
    async def test_abort_between_attempts(self, recording_sleep):
        abort = asyncio.Event()

        class AbortAfterFirst(FlakyProcessor):
            async def __call__(self, item_id):
                abort.set()
                return await super().__call__(item_id)

        process = AbortAfterFirst(failures={"a": [ConnectionError("again")]})
        state = await recover_batch_errors(
            [_item("a")], process, abort=abort, sleep=recording_sleep
        )
        assert process.calls == ["a"]
        assert state.status == "aborted"
        assert state.failed_items[0].retry_count == 1


class TestRetryQueue:
    @pytest.mark.asyncio
    async def test_add_and_recover(self, recording_sleep):
        queue = RetryQueue(FlakyProcessor(), sleep=recording_sleep)
        queue.add("a", ConnectionError("reset"))
        queue.add("b", Errors.validation("bad"))
        assert queue.retryable_count == 1
        state = await queue.recover()
        assert state.recovered_items == ["a"]
        assert [i.item_id for i in queue.failed_items] == ["b"]

    @pytest.mark.asyncio
    async def test_concurrent_recover_rejected(self):
        gate = asyncio.Event()

        async def blocking_sleep(_delay):
            await gate.wait()

        queue = RetryQueue(FlakyProcessor(), sleep=blocking_sleep)
        queue.add("a", ConnectionError("reset"))
        first = asyncio.create_task(queue.recover())
        await asyncio.sleep(0)
        assert queue.recovering is True
        with pytest.raises(RecoveryInProgressError, match="already in progress"):
            await queue.recover()
        gate.set()
        state = await first
        assert state.status == "completed"
        assert queue.recovering is False

    def test_clear(self):
        queue = RetryQueue(FlakyProcessor())
        queue.add("a", ConnectionError("reset"))
        queue.clear()
        assert queue.failed_items == []

    @pytest.mark.asyncio
    async def test_from_settings(self, settings, recording_sleep):
        tuned = settings.model_copy(update={"recovery_max_retries": 1, "recovery_concurrency": 2})
        queue = RetryQueue.from_settings(FlakyProcessor(), tuned, sleep=recording_sleep)
        for item_id in ("a", "b", "c"):
            queue.add(item_id, ConnectionError("reset"))
        state = await queue.recover()
        assert state.status == "completed"
        assert queue._options["concurrency"] == 2
        assert queue._options["max_retries"] == 1
