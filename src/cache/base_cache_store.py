# src/cache/base_cache_store.py — v2
"""Abstract cache layer interfaces shared by L1 and L2."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Sequence

from geocopy.cache.models import L2CacheStats


class BaseCacheStore(ABC):
    """Key/value contract implemented by every cache layer.

    get() returns None on a miss. Entries are visible only until their
    expiry; an expired entry behaves as a miss.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the cached value or None."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_s: float | None = None) -> None:
        """Store a value for ttl_s seconds (layer default when None)."""

    @abstractmethod
    async def has(self, key: str) -> bool:
        """Whether a live entry exists for key."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove an entry if present."""

    @abstractmethod
    async def prune(self) -> int:
        """Remove expired entries, returning how many were dropped."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every entry."""


class BaseL2Store(BaseCacheStore):
    """Durable (L2) cache layer with per-entry metadata.

    Values must be JSON-serializable. Product name and keywords are kept
    beside each entry so whole products can be invalidated.
    """

    @abstractmethod
    async def set(
        self,
        key: str,
        value: Any,
        ttl_s: float | None = None,
        product_name: str = "",
        keywords: Sequence[str] = (),
    ) -> None:
        """Upsert an entry, resetting its hit count and expiry."""

    @abstractmethod
    async def increment_hit(self, key: str) -> None:
        """Bump hit_count and last_accessed_at for key."""

    @abstractmethod
    async def stats(self) -> L2CacheStats:
        """Aggregate statistics over stored entries."""

    @abstractmethod
    async def invalidate_product(self, product_name: str) -> int:
        """Delete all entries of a product, returning how many were removed."""

    def close(self) -> None:
        """Release backend resources."""
