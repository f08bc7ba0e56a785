# src/cache/tiered_cache.py — v1
"""Two-layer generation cache: in-process L1 in front of a durable L2.

Read path: L1 → L2 → promote into L1. Write path: both layers.
The cache is an optimization only; every L2 failure is logged and turned
into a miss or a no-op so that callers never see a cache error.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from geocopy.cache.base_cache_store import BaseL2Store
from geocopy.cache.fingerprint import stage_cache_key
from geocopy.cache.memory_cache import (
    DEFAULT_STAGE_MAX_SIZE,
    DEFAULT_STAGE_TTL_S,
    MemoryCache,
)
from geocopy.cache.models import (
    CacheLookupResult,
    SessionCacheStats,
    TieredCacheStats,
)

logger = logging.getLogger(__name__)


class TieredCache:
    """Whole-result and per-stage cache over L1 tiers and an optional L2.

    Args:
        results: L1 tier for whole generation results.
        stages: L1 tier for stage payloads.
        l2: Durable store shared by both tiers (None disables L2).
        l2_ttl_s: TTL for L2 writes (store default when None).
    """

    def __init__(
        self,
        results: MemoryCache | None = None,
        stages: MemoryCache | None = None,
        l2: BaseL2Store | None = None,
        l2_ttl_s: float | None = None,
    ) -> None:
        if results is None:
            results = MemoryCache(name="results")
        if stages is None:
            stages = MemoryCache(
                max_size=DEFAULT_STAGE_MAX_SIZE,
                default_ttl_s=DEFAULT_STAGE_TTL_S,
                name="stages",
            )
        self._results = results
        self._stages = stages
        self._l2 = l2
        self._l2_ttl_s = l2_ttl_s
        self._session = SessionCacheStats()
        self._pending: set[asyncio.Task[None]] = set()
        # L1 result key -> product name, for product invalidation
        self._result_products: dict[str, str] = {}

    @property
    def results(self) -> MemoryCache:
        return self._results

    @property
    def stages(self) -> MemoryCache:
        return self._stages

    @property
    def l2(self) -> BaseL2Store | None:
        return self._l2

    @property
    def session(self) -> SessionCacheStats:
        return self._session

    # ------------------------------------------------------------------
    # Whole results
    # ------------------------------------------------------------------

    async def get_result(self, key: str) -> CacheLookupResult:
        return await self._lookup(self._results, key)

    async def set_result(
        self,
        key: str,
        value: Any,
        product_name: str = "",
        keywords: Sequence[str] = (),
    ) -> None:
        self._results.store(key, value)
        if product_name:
            self._result_products[key] = product_name.strip().lower()
        await self._l2_set(key, value, product_name, keywords)

    # ------------------------------------------------------------------
    # Stage payloads
    # ------------------------------------------------------------------

    async def get_stage(self, generation_key: str, stage: str) -> CacheLookupResult:
        return await self._lookup(self._stages, stage_cache_key(generation_key, stage))

    async def set_stage(
        self,
        generation_key: str,
        stage: str,
        payload: Any,
        product_name: str = "",
        keywords: Sequence[str] = (),
    ) -> None:
        key = stage_cache_key(generation_key, stage)
        self._stages.store(key, payload)
        await self._l2_set(key, payload, product_name, keywords)

    # ------------------------------------------------------------------
    # Generic key access (result tier)
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        return (await self.get_result(key)).value

    async def set(self, key: str, value: Any) -> None:
        await self.set_result(key, value)

    async def has(self, key: str) -> bool:
        if self._results.contains(key):
            return True
        if self._l2 is None:
            return False
        try:
            return await self._l2.has(key)
        except Exception as e:
            logger.warning("L2 has(%s) failed: %s", key, e)
            return False

    async def delete(self, key: str) -> None:
        self._results.discard(key)
        self._stages.discard(key)
        self._result_products.pop(key, None)
        if self._l2 is not None:
            try:
                await self._l2.delete(key)
            except Exception as e:
                logger.warning("L2 delete(%s) failed: %s", key, e)

    async def invalidate(self, generation_key: str, stages: Sequence[str] = ()) -> None:
        """Drop a whole result and the given stage entries."""
        await self.delete(generation_key)
        for stage in stages:
            await self.delete(stage_cache_key(generation_key, stage))

    async def invalidate_product(self, product_name: str) -> int:
        """Remove every cached result of a product; returns L2 rows removed."""
        target = product_name.strip().lower()
        for key, name in list(self._result_products.items()):
            if name == target:
                self._results.discard(key)
                self._result_products.pop(key, None)
        if self._l2 is None:
            return 0
        try:
            return await self._l2.invalidate_product(product_name)
        except Exception as e:
            logger.warning("L2 invalidate_product(%s) failed: %s", product_name, e)
            return 0

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def prune(self) -> dict[str, int]:
        l1 = self._results.prune_expired() + self._stages.prune_expired()
        live = set(self._results.keys())
        self._result_products = {
            k: v for k, v in self._result_products.items() if k in live
        }
        l2 = 0
        if self._l2 is not None:
            try:
                l2 = await self._l2.prune()
            except Exception as e:
                logger.warning("L2 prune failed: %s", e)
        return {"l1": l1, "l2": l2}

    async def clear(self) -> None:
        self._results.reset()
        self._stages.reset()
        self._result_products.clear()
        self._session = SessionCacheStats()
        if self._l2 is not None:
            try:
                await self._l2.clear()
            except Exception as e:
                logger.warning("L2 clear failed: %s", e)

    async def stats(self) -> TieredCacheStats:
        l2_stats = None
        if self._l2 is not None:
            try:
                l2_stats = await self._l2.stats()
            except Exception as e:
                logger.warning("L2 stats failed: %s", e)
        session = self._session
        return TieredCacheStats(
            results=self._results.stats(),
            stages=self._stages.stats(),
            l2=l2_stats,
            l1_hit_rate=session.rate(session.l1_hits),
            l2_hit_rate=session.rate(session.l2_hits),
            total_hits=session.total_hits,
            total_requests=session.total_requests,
        )

    async def close(self) -> None:
        """Wait for pending hit-count updates, then close L2."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._l2 is not None:
            self._l2.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _lookup(self, tier: MemoryCache, key: str) -> CacheLookupResult:
        value = tier.lookup(key)
        if value is not None:
            self._session.l1_hits += 1
            return CacheLookupResult(value=value, hit=True, source="l1")

        if self._l2 is not None:
            try:
                value = await self._l2.get(key)
            except Exception as e:
                logger.warning("L2 get(%s) failed: %s", key, e)
                value = None
            if value is not None:
                self._session.l2_hits += 1
                tier.store(key, value)
                self._schedule_hit(key)
                logger.debug("L2 hit promoted to L1 %s: %s", tier.name, key)
                return CacheLookupResult(value=value, hit=True, source="l2")

        self._session.misses += 1
        return CacheLookupResult()

    async def _l2_set(
        self, key: str, value: Any, product_name: str, keywords: Sequence[str]
    ) -> None:
        if self._l2 is None:
            return
        try:
            await self._l2.set(
                key,
                value,
                ttl_s=self._l2_ttl_s,
                product_name=product_name,
                keywords=keywords,
            )
        except Exception as e:
            logger.warning("L2 set(%s) failed: %s", key, e)

    def _schedule_hit(self, key: str) -> None:
        task = asyncio.create_task(self._l2.increment_hit(key))  # type: ignore[union-attr]
        self._pending.add(task)
        task.add_done_callback(lambda t, k=key: self._on_hit_done(t, k))

    def _on_hit_done(self, task: asyncio.Task[None], key: str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("L2 hit count update for %s failed: %s", key, exc)
