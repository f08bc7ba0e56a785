# src/cache/memory_cache.py — v1
"""L1 in-process cache: least-recently-used eviction with per-entry TTL.

Backed by cachetools.TLRUCache; every access goes through a lock so that
recency bookkeeping stays consistent under concurrent callers.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from cachetools import TLRUCache

from geocopy.cache.base_cache_store import BaseCacheStore
from geocopy.cache.models import CacheEntry, L1CacheStats

logger = logging.getLogger(__name__)

DEFAULT_RESULT_MAX_SIZE = 50
DEFAULT_RESULT_TTL_S = 30 * 60
DEFAULT_STAGE_MAX_SIZE = 200
DEFAULT_STAGE_TTL_S = 15 * 60


def _entry_expiry(key: str, entry: CacheEntry[Any], now: float) -> float:
    return entry.expires_at


class MemoryCache(BaseCacheStore):
    """Process-local LRU+TTL cache.

    Args:
        max_size: Entry capacity; the least recently used entry is evicted
            when a new key would exceed it.
        default_ttl_s: TTL applied when set() is called without one.
        name: Label used in log messages.
        clock: Monotonic time source in seconds (injectable for tests).
    """

    def __init__(
        self,
        max_size: int = DEFAULT_RESULT_MAX_SIZE,
        default_ttl_s: float = DEFAULT_RESULT_TTL_S,
        name: str = "l1",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        self._max_size = max_size
        self._default_ttl_s = default_ttl_s
        self._name = name
        self._clock = clock
        self._lock = threading.RLock()
        self._data: TLRUCache[str, CacheEntry[Any]] = TLRUCache(
            maxsize=max_size, ttu=_entry_expiry, timer=clock
        )
        self._hits = 0
        self._misses = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def default_ttl_s(self) -> float:
        return self._default_ttl_s

    # ------------------------------------------------------------------
    # Synchronous core
    # ------------------------------------------------------------------

    def lookup(self, key: str) -> Any | None:
        """Return the value for key, refreshing its recency; None on miss."""
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                # Drop the stale entry if the miss was caused by expiry.
                self._data.expire()
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def store(self, key: str, value: Any, ttl_s: float | None = None) -> None:
        """Insert or replace key, evicting the LRU entry when full."""
        ttl = self._default_ttl_s if ttl_s is None else ttl_s
        with self._lock:
            now = self._clock()
            self._data[key] = CacheEntry(value=value, created_at=now, expires_at=now + ttl)

    def contains(self, key: str) -> bool:
        with self._lock:
            if key in self._data:
                return True
            self._data.expire()
            return False

    def discard(self, key: str) -> bool:
        with self._lock:
            present = key in self._data
            self._data.pop(key, None)
            return present

    def prune_expired(self) -> int:
        with self._lock:
            expired = self._data.expire() or []
            count = len(list(expired))
        if count:
            logger.debug("L1 %s pruned %d expired entries", self._name, count)
        return count

    def keys(self) -> list[str]:
        """Keys of live entries."""
        with self._lock:
            self._data.expire()
            return list(self._data.keys())

    def reset(self) -> None:
        with self._lock:
            self._data.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> L1CacheStats:
        with self._lock:
            self._data.expire()
            return L1CacheStats(
                hits=self._hits,
                misses=self._misses,
                size=len(self._data),
                max_size=self._max_size,
            )

    def __len__(self) -> int:
        with self._lock:
            self._data.expire()
            return len(self._data)

    # ------------------------------------------------------------------
    # BaseCacheStore contract
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        return self.lookup(key)

    async def set(self, key: str, value: Any, ttl_s: float | None = None) -> None:
        self.store(key, value, ttl_s)

    async def has(self, key: str) -> bool:
        return self.contains(key)

    async def delete(self, key: str) -> None:
        self.discard(key)

    async def prune(self) -> int:
        return self.prune_expired()

    async def clear(self) -> None:
        self.reset()
