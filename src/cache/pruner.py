# src/cache/pruner.py — v1
"""Periodic expiry sweep for a TieredCache.

Runs as a background asyncio task; use start()/stop() or ``async with``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from geocopy.cache.tiered_cache import TieredCache

logger = logging.getLogger(__name__)

DEFAULT_PRUNE_INTERVAL_S = 5 * 60


class CachePruner:
    """Background task calling ``cache.prune()`` every ``interval_s`` seconds."""

    def __init__(
        self,
        cache: TieredCache,
        interval_s: float = DEFAULT_PRUNE_INTERVAL_S,
        sleep: Any = asyncio.sleep,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self._cache = cache
        self._interval_s = interval_s
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="cache-pruner")
        logger.debug("Cache pruner started (interval=%ss)", self._interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Cache pruner stopped after %d runs", self.runs)

    async def run_once(self) -> dict[str, int]:
        removed = await self._cache.prune()
        self.runs += 1
        if removed["l1"] or removed["l2"]:
            logger.info(
                "Cache prune removed %d L1 and %d L2 entries",
                removed["l1"],
                removed["l2"],
            )
        return removed

    async def _loop(self) -> None:
        while True:
            await self._sleep(self._interval_s)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Cache prune failed")

    async def __aenter__(self) -> CachePruner:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
