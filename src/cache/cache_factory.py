# src/cache/cache_factory.py — v4
"""Factory for cache instantiation.

Builds one TieredCache per process from Settings; callers own the instance
and pass it to the orchestrator explicitly. open_tiered_cache() also runs
the periodic pruner for the lifetime of the cache.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from geocopy.cache.base_cache_store import BaseL2Store
from geocopy.cache.memory_cache import MemoryCache
from geocopy.cache.pruner import CachePruner
from geocopy.cache.tiered_cache import TieredCache
from geocopy.config.settings import Settings


def create_l2_store(settings: Settings | None = None) -> BaseL2Store | None:
    """Instantiate the configured durable backend (None when disabled).

    Args:
        settings: Application settings. Defaults to SQLite under the
            default cache root.

    Returns:
        Configured BaseL2Store implementation, or None for backend "none".
    """
    settings = settings or Settings(_env_file=None)  # type: ignore[call-arg]
    backend = settings.cache_l2_backend

    if backend == "none":
        return None

    if backend == "sqlite":
        from geocopy.cache.sqlite_store import SqliteCacheStore
        return SqliteCacheStore(
            db_path=settings.cache_db_path,
            default_ttl_s=settings.cache_l2_ttl_s,
        )

    if backend == "redis":
        from geocopy.cache.redis_store import RedisCacheStore
        if not settings.cache_redis_url:
            raise ValueError(
                "CACHE_REDIS_URL must be set when CACHE_L2_BACKEND=redis"
            )
        return RedisCacheStore(
            redis_url=settings.cache_redis_url,
            default_ttl_s=settings.cache_l2_ttl_s,
        )

    raise ValueError(f"Unsupported cache backend: {backend!r}")


def create_tiered_cache(
    settings: Settings | None = None,
    l2: BaseL2Store | None = None,
) -> TieredCache:
    """Build the L1 tiers and L2 store described by settings.

    Args:
        settings: Application settings.
        l2: Pre-built durable store; overrides the configured backend.
    """
    settings = settings or Settings(_env_file=None)  # type: ignore[call-arg]
    if l2 is None:
        l2 = create_l2_store(settings)
    return TieredCache(
        results=MemoryCache(
            max_size=settings.cache_result_max_size,
            default_ttl_s=settings.cache_result_ttl_s,
            name="results",
        ),
        stages=MemoryCache(
            max_size=settings.cache_stage_max_size,
            default_ttl_s=settings.cache_stage_ttl_s,
            name="stages",
        ),
        l2=l2,
        l2_ttl_s=settings.cache_l2_ttl_s,
    )


def create_cache_pruner(cache: TieredCache, settings: Settings | None = None) -> CachePruner:
    """Pruner sweeping cache every settings.cache_prune_interval_s seconds."""
    settings = settings or Settings(_env_file=None)  # type: ignore[call-arg]
    return CachePruner(cache, interval_s=settings.cache_prune_interval_s)


@asynccontextmanager
async def open_tiered_cache(
    settings: Settings | None = None,
    l2: BaseL2Store | None = None,
    prune: bool = True,
) -> AsyncGenerator[TieredCache, None]:
    """Build the cache, run its background pruner, and close both on exit.

    Usage:
        async with open_tiered_cache(settings) as cache:
            await generate(request, worker, settings=settings, cache=cache)
    """
    settings = settings or Settings(_env_file=None)  # type: ignore[call-arg]
    cache = create_tiered_cache(settings, l2=l2)
    pruner = create_cache_pruner(cache, settings) if prune else None
    try:
        if pruner is not None:
            pruner.start()
        yield cache
    finally:
        if pruner is not None:
            await pruner.stop()
        await cache.close()
