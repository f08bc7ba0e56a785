# src/pipeline/state.py — v2
"""Mutable pipeline state for one generation run.

Holds per-stage results, the aggregate status and, once finished, the
assembled GenerationResult. The orchestrator is the only writer.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from geocopy.cache.models import CacheSource
from geocopy.core.errors import ErrorDetails
from geocopy.core.models import (
    GenerationRequest,
    GenerationResult,
    PipelineStatus,
    StageStatus,
)

TERMINAL_STAGE_STATUSES: frozenset[str] = frozenset({"completed", "failed", "skipped"})


class IllegalStageTransition(Exception):
    """A terminal stage result was asked to change status."""


class StageResult(BaseModel):
    """Execution record of one stage. Terminal statuses are final."""

    stage: str
    status: StageStatus = "pending"
    payload: Any = None
    error: str | None = None
    error_details: ErrorDetails | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    from_cache: bool = False
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STAGE_STATUSES

    def _transition(self, status: StageStatus) -> None:
        if self.is_terminal:
            raise IllegalStageTransition(
                f"Stage '{self.stage}' is already {self.status}; cannot become {status}"
            )
        self.status = status

    def mark_running(self) -> None:
        self._transition("running")
        self.started_at = datetime.now(timezone.utc)

    def mark_completed(self, payload: Any, from_cache: bool = False) -> None:
        self._transition("completed")
        self.payload = payload
        self.from_cache = from_cache
        self.completed_at = datetime.now(timezone.utc)

    def mark_failed(self, error: str, details: ErrorDetails | None = None) -> None:
        self._transition("failed")
        self.error = error
        self.error_details = details
        self.completed_at = datetime.now(timezone.utc)

    def mark_skipped(self, reason: str) -> None:
        self._transition("skipped")
        self.error = reason
        self.completed_at = datetime.now(timezone.utc)


class PipelineState(BaseModel):
    """State of one generation run, returned by PipelineOrchestrator.run()."""

    # === IDENTITY ===
    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request: GenerationRequest
    fingerprint: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # === EXECUTION ===
    stage_results: dict[str, StageResult] = Field(default_factory=dict)
    status: PipelineStatus = "running"
    last_percentage: float = 0.0
    latency_ms: int = 0
    cache_source: CacheSource | None = None

    # === OUTCOME ===
    result: GenerationResult | None = None
    error: str | None = None

    def statuses(self) -> dict[str, StageStatus]:
        return {stage: r.status for stage, r in self.stage_results.items()}

    def _with_status(self, status: str) -> list[str]:
        return [s for s, r in self.stage_results.items() if r.status == status]

    @property
    def completed_stages(self) -> list[str]:
        return self._with_status("completed")

    @property
    def failed_stages(self) -> list[str]:
        return self._with_status("failed")

    @property
    def skipped_stages(self) -> list[str]:
        return self._with_status("skipped")

    @property
    def pending_stages(self) -> list[str]:
        return self._with_status("pending")

    @property
    def cache_hit(self) -> bool:
        return self.cache_source is not None
