# src/progress/emitter.py — v2
"""Progress emitter: turns stage transitions into ordered ProgressEvents.

Events are pushed into a bounded asyncio.Queue so a slow consumer applies
back-pressure to the run instead of growing memory. The consumer side is
events(), usually drained by a StreamWriter task.
Each event also carries elapsed time, a remaining-time estimate and the
stages that have failed so far.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from typing import Any, Callable, Iterable

from geocopy.progress.models import ProgressEvent, ProgressEventType, StageErrorEntry

logger = logging.getLogger(__name__)

INITIALIZING = "initializing"
COMPLETE = "complete"
ERROR = "error"

# Progress weights per stage (sum 100).
STAGE_WEIGHTS: dict[str, int] = {
    INITIALIZING: 5,
    "description": 20,
    "usp_extraction": 10,
    "chapters": 10,
    "faq": 15,
    "step_by_step": 5,
    "case_studies": 10,
    "keywords": 10,
    "grounding_aggregation": 10,
    COMPLETE: 5,
}

STAGE_LABELS: dict[str, dict[str, str]] = {
    INITIALIZING: {"ko": "초기화 중...", "en": "Initializing..."},
    "description": {"ko": "설명문 생성 중...", "en": "Generating description..."},
    "usp_extraction": {"ko": "USP 추출 중...", "en": "Extracting USPs..."},
    "chapters": {"ko": "챕터 생성 중...", "en": "Generating chapters..."},
    "faq": {"ko": "FAQ 생성 중...", "en": "Generating FAQ..."},
    "step_by_step": {"ko": "단계별 가이드 생성 중...", "en": "Generating step-by-step guide..."},
    "case_studies": {"ko": "사례 연구 생성 중...", "en": "Generating case studies..."},
    "keywords": {"ko": "키워드 분석 중...", "en": "Analyzing keywords..."},
    "grounding_aggregation": {"ko": "출처 정리 중...", "en": "Aggregating grounding sources..."},
    COMPLETE: {"ko": "완료", "en": "Complete"},
    ERROR: {"ko": "오류 발생", "en": "Error occurred"},
}


def stage_label(stage: str, language: str = "ko") -> str:
    labels = STAGE_LABELS.get(stage)
    if labels is None:
        return stage
    return labels.get(language) or labels["en"]


def calculate_progress(
    resolved_stages: Iterable[str],
    partials: dict[str, float] | None = None,
) -> int:
    """Cumulative percentage from resolved stages plus running partials.

    partials maps a running stage to its own progress in [0, 100].
    """
    total = sum(STAGE_WEIGHTS.get(stage, 0) for stage in resolved_stages)
    for stage, pct in (partials or {}).items():
        total += STAGE_WEIGHTS.get(stage, 0) * min(max(pct, 0.0), 100.0) / 100
    return min(round(total), 100)


def estimate_remaining_ms(elapsed_ms: float, percentage: float) -> int:
    """Linear time-to-finish estimate; 0 before any progress and at 100%."""
    if percentage <= 0:
        return 0
    return max(round(elapsed_ms / percentage * (100 - percentage)), 0)


class EmitterClosedError(RuntimeError):
    """An event was emitted after the terminal event."""


class ProgressEmitter:
    """Ordered, monotone progress reporting for one run.

    Args:
        language: Label language for default messages.
        buffer_size: Capacity of the event queue.
        publish: When False, events are tracked but not queued (no consumer).
        clock: Monotonic time source in seconds; elapsed time counts from
            construction.
    """

    def __init__(
        self,
        language: str = "ko",
        buffer_size: int = 64,
        publish: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self._language = language
        self._publish = publish
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=buffer_size)
        self._resolved: list[str] = []
        self._completed: list[str] = []
        self._partials: dict[str, float] = {}
        self._percentage = 0
        self._sequence = 0
        self._closed = False
        self._current: str = INITIALIZING
        self._errors: list[StageErrorEntry] = []
        self._clock = clock
        self._started = clock()

    @property
    def percentage(self) -> int:
        return self._percentage

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def completed_stages(self) -> list[str]:
        return list(self._completed)

    @property
    def errors(self) -> list[StageErrorEntry]:
        return list(self._errors)

    @property
    def elapsed_ms(self) -> int:
        return int((self._clock() - self._started) * 1000)

    # --- Producer API ---

    async def start_stage(self, stage: str, message: str | None = None) -> ProgressEvent:
        self._current = stage
        self._partials[stage] = 0.0
        return await self._emit("stage_start", stage, message)

    async def update_progress(
        self,
        percentage: float,
        message: str | None = None,
        stage: str | None = None,
    ) -> ProgressEvent:
        """Report progress within a running stage (percentage of that stage)."""
        stage = stage or self._current
        self._partials[stage] = min(max(float(percentage), 0.0), 100.0)
        return await self._emit("progress", stage, message)

    async def complete_stage(
        self,
        stage: str | None = None,
        message: str | None = None,
        data: Any = None,
    ) -> ProgressEvent:
        stage = stage or self._current
        self._resolve(stage)
        if stage != INITIALIZING:
            self._completed.append(stage)
        return await self._emit("stage_complete", stage, message, data)

    async def fail_stage(self, stage: str, message: str) -> ProgressEvent:
        self._resolve(stage)
        self._errors.append(StageErrorEntry(stage=stage, message=message))
        return await self._emit("stage_failed", stage, message)

    async def skip_stage(self, stage: str, message: str) -> ProgressEvent:
        self._resolve(stage)
        return await self._emit("stage_skipped", stage, message)

    async def complete(self, result: Any = None) -> ProgressEvent:
        event = await self._emit("complete", COMPLETE, None, result, percentage=100)
        await self._finish()
        return event

    async def error(self, message: str, data: Any = None) -> ProgressEvent:
        event = await self._emit("error", ERROR, message, data)
        await self._finish()
        return event

    def detach(self) -> None:
        """Stop queuing events once the consumer is gone.

        Queued events are dropped so a producer blocked on a full queue
        resumes. Percentages and sequence numbers keep advancing.
        """
        if not self._publish:
            return
        self._publish = False
        while not self._queue.empty():
            self._queue.get_nowait()
        logger.debug("Progress emitter detached after %d events", self._sequence)

    # --- Consumer API ---

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events in order until the terminal event has been delivered."""
        if not self._publish:
            return
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    # --- Internals ---

    def _resolve(self, stage: str) -> None:
        self._partials.pop(stage, None)
        if stage not in self._resolved:
            self._resolved.append(stage)

    async def _emit(
        self,
        event_type: ProgressEventType,
        stage: str,
        message: str | None,
        data: Any = None,
        percentage: int | None = None,
    ) -> ProgressEvent:
        if self._closed:
            raise EmitterClosedError(
                f"Cannot emit '{event_type}' for '{stage}' after the terminal event"
            )
        if percentage is None:
            percentage = calculate_progress(self._resolved, self._partials)
        # Never report less than before.
        self._percentage = max(self._percentage, percentage)
        self._sequence += 1
        elapsed_ms = self.elapsed_ms
        event = ProgressEvent(
            type=event_type,
            stage=stage,
            percentage=self._percentage,
            message=message or stage_label(stage, self._language),
            completed_stages=list(self._completed),
            errors=list(self._errors),
            data=data,
            elapsed_ms=elapsed_ms,
            estimated_remaining_ms=estimate_remaining_ms(elapsed_ms, self._percentage),
            sequence=self._sequence,
        )
        if self._publish:
            await self._queue.put(event)
        return event

    async def _finish(self) -> None:
        self._closed = True
        if self._publish:
            await self._queue.put(None)
