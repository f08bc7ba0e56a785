# src/progress/models.py — v2
"""Progress event model streamed to callers during a run."""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, Field

ProgressEventType = Literal[
    "stage_start",
    "progress",
    "stage_complete",
    "stage_failed",
    "stage_skipped",
    "complete",
    "error",
]

TERMINAL_EVENT_TYPES: frozenset[str] = frozenset({"complete", "error"})


class StageErrorEntry(BaseModel):
    """A stage that failed during the run, with its final message."""

    stage: str
    message: str


class ProgressEvent(BaseModel):
    """One ordered notification of a stage transition.

    sequence increases by one per event of a run; percentage never
    decreases across a run's events. elapsed_ms counts from the start of
    the run and estimated_remaining_ms extrapolates it linearly from the
    percentage (0 until progress is known).
    """

    type: ProgressEventType
    stage: str
    percentage: int = Field(ge=0, le=100)
    message: str = ""
    completed_stages: list[str] = Field(default_factory=list)
    errors: list[StageErrorEntry] = Field(default_factory=list)
    data: Any = None
    elapsed_ms: int = 0
    estimated_remaining_ms: int = 0
    sequence: int = 0
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES
