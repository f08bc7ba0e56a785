# src/cache/models.py — v2
"""Cache domain models: CacheEntry, L2CacheRecord, stats and lookup results."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")

CacheSource = Literal["l1", "l2"]


@dataclass
class CacheEntry(Generic[T]):
    """Single L1 entry. Times are in the cache clock's seconds."""

    value: T
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return not (now < self.expires_at)


class L2CacheRecord(BaseModel):
    """Row of the durable cache table."""

    cache_key: str
    product_name: str = ""
    keywords: list[str] = Field(default_factory=list)
    value: Any = None
    hit_count: int = 0
    last_accessed_at: datetime
    created_at: datetime
    expires_at: datetime


class L1CacheStats(BaseModel):
    """Counters for one in-process cache tier."""

    hits: int = 0
    misses: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> str:
        total = self.hits + self.misses
        if total == 0:
            return "0%"
        return f"{self.hits / total * 100:.1f}%"


class L2CacheStats(BaseModel):
    """Aggregate statistics of the durable cache."""

    total_entries: int = 0
    total_hits: int = 0
    expired_entries: int = 0
    avg_hit_count: float = 0.0
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None


class SessionCacheStats(BaseModel):
    """Hit accounting across both layers since construction (or clear)."""

    l1_hits: int = 0
    l2_hits: int = 0
    misses: int = 0

    @property
    def total_requests(self) -> int:
        return self.l1_hits + self.l2_hits + self.misses

    @property
    def total_hits(self) -> int:
        return self.l1_hits + self.l2_hits

    def rate(self, hits: int) -> str:
        total = self.total_requests
        if total == 0:
            return "0%"
        return f"{hits / total * 100:.1f}%"


class TieredCacheStats(BaseModel):
    """Combined statistics reported by TieredCache.stats()."""

    results: L1CacheStats
    stages: L1CacheStats
    l2: L2CacheStats | None = None
    l1_hit_rate: str = "0%"
    l2_hit_rate: str = "0%"
    total_hits: int = 0
    total_requests: int = 0


class CacheLookupResult(BaseModel):
    """Outcome of a tiered lookup."""

    value: Any = None
    hit: bool = False
    source: CacheSource | None = None
