# src/core/models.py — v2
"""Shared Pydantic domain models used across modules.

No module redefines these types; all imports come from core.models.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from geocopy.core.errors import Errors

StageId = Literal[
    "description",
    "usp_extraction",
    "chapters",
    "faq",
    "step_by_step",
    "case_studies",
    "keywords",
    "grounding_aggregation",
]

PipelineProfile = Literal["full", "quick", "grounded"]
Language = Literal["ko", "en"]
StageStatus = Literal["pending", "running", "completed", "failed", "skipped"]
PipelineStatus = Literal["running", "completed", "partial", "failed", "aborted"]


# === REQUEST ===


class GenerationRequest(BaseModel):
    """A single copy-generation request. Immutable once accepted."""

    model_config = ConfigDict(frozen=True)

    product_name: str
    content: str
    keywords: tuple[str, ...] = ()
    language: Language = "ko"
    profile: PipelineProfile = "full"
    launch_date: str | None = None

    @field_validator("product_name", "content")
    @classmethod
    def _not_blank(cls, v: str, info) -> str:  # noqa: N805
        if not v or not v.strip():
            raise Errors.validation(
                f"{info.field_name} must not be empty",
                context={"field": info.field_name},
            )
        return v

    @field_validator("keywords", mode="before")
    @classmethod
    def _coerce_keywords(cls, v: Any) -> tuple[str, ...]:  # noqa: N805
        if v is None:
            return ()
        return tuple(str(k) for k in v)


# === RESULT ===


class GenerationResult(BaseModel):
    """Aggregated copy produced by a pipeline run."""

    fingerprint: str
    product_name: str
    language: Language
    profile: PipelineProfile
    sections: dict[str, Any] = Field(default_factory=dict)
    stages_completed: list[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
