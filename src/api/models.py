# src/api/models.py — v3
"""API-level models: ConfigOverrides, StageOutcome, GenerationResponse."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from geocopy.cache.models import CacheSource
from geocopy.core.errors import ErrorDetails
from geocopy.core.models import GenerationResult, PipelineStatus, StageStatus


class ConfigOverrides(BaseModel):
    """Per-request overrides, a validated subset of Settings."""

    cache_enabled: bool | None = None
    recovery_max_retries: int | None = None
    retry_initial_delay_ms: int | None = None
    retry_max_delay_ms: int | None = None
    retry_jitter_ratio: float | None = None
    progress_buffer_size: int | None = None


class StageOutcome(BaseModel):
    """User-visible status of one stage."""

    stage: str
    status: StageStatus
    error: str | None = None
    error_details: ErrorDetails | None = None
    from_cache: bool = False
    attempts: int = 0


class GenerationResponse(BaseModel):
    """Return value of facade.generate()."""

    run_id: str
    fingerprint: str
    status: PipelineStatus
    result: GenerationResult | None = None
    stages: list[StageOutcome] = Field(default_factory=list)
    error: str | None = None
    last_percentage: float = 0.0
    completed_stages: list[str] = Field(default_factory=list)
    latency_ms: int = 0
    cache_hit: bool = False
    cache_source: CacheSource | None = None
    progress_error: str | None = None

    @property
    def sections(self) -> dict[str, Any]:
        return self.result.sections if self.result else {}
