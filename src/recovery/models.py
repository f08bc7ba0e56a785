# src/recovery/models.py — v2
"""Recovery data models: BatchErrorItem, RecoveryState."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from geocopy.core.errors import ErrorDetails, classify_error

RecoveryStatus = Literal["pending", "recovering", "completed", "failed", "aborted"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BatchErrorItem(BaseModel):
    """One failed unit of work awaiting (or done with) recovery.

    Frozen once retry_count reaches the caller's max_retries or the last
    error was classified as fatal.
    """

    item_id: str
    error: str
    error_details: ErrorDetails | None = None
    retryable: bool = False
    retry_count: int = 0
    last_attempt: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_exception(
        cls, item_id: str, error: BaseException, retry_count: int = 0
    ) -> BatchErrorItem:
        details = classify_error(error)
        return cls(
            item_id=item_id,
            error=details.message,
            error_details=details,
            retryable=details.retryable,
            retry_count=retry_count,
        )


class RecoveryState(BaseModel):
    """Outcome of one recover_batch_errors() run."""

    job_id: str
    total_items: int = 0
    failed_items: list[BatchErrorItem] = Field(default_factory=list)
    recovered_items: list[str] = Field(default_factory=list)
    results: dict[str, Any] = Field(default_factory=dict)
    status: RecoveryStatus = "pending"

    def failed_item(self, item_id: str) -> BatchErrorItem | None:
        for item in self.failed_items:
            if item.item_id == item_id:
                return item
        return None
