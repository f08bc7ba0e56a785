# src/cache/redis_store.py — v2
"""Redis-based L2 cache store (CACHE_L2_BACKEND=redis).

Requires 'redis' package: pip install redis.
Suitable for multi-instance deployments sharing one cache. Each entry is a
JSON envelope stored with a native Redis TTL; a key index set supports
stats, product invalidation and clear().
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Sequence

from geocopy.cache.base_cache_store import BaseL2Store
from geocopy.cache.models import L2CacheStats

logger = logging.getLogger(__name__)

_KEY_PREFIX = "geocopy:cache:"
_INDEX_KEY = "geocopy:cache:__index__"
_HITS_KEY = "geocopy:cache:__hits__"

DEFAULT_L2_TTL_S = 24 * 60 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RedisCacheStore(BaseL2Store):
    """Redis-backed durable cache."""

    def __init__(
        self,
        redis_url: str,
        default_ttl_s: float = DEFAULT_L2_TTL_S,
        now: Callable[[], datetime] = _utcnow,
        client: Any = None,
    ) -> None:
        if client is None:
            try:
                import redis
            except ImportError as e:
                raise ImportError(
                    "redis package required: pip install redis"
                ) from e
            client = redis.Redis.from_url(redis_url, decode_responses=True)
        self._client = client
        self._default_ttl_s = default_ttl_s
        self._now = now

    def _load(self, key: str) -> dict[str, Any] | None:
        data = self._client.get(f"{_KEY_PREFIX}{key}")
        if data is None:
            return None
        try:
            envelope = json.loads(data)
        except ValueError as e:
            logger.warning("Failed to deserialize cache entry %s: %s", key, e)
            return None
        expires_at = datetime.fromisoformat(envelope["expires_at"])
        if expires_at <= self._now():
            return None
        return envelope

    async def get(self, key: str) -> Any | None:
        envelope = self._load(key)
        return None if envelope is None else envelope["value"]

    async def set(
        self,
        key: str,
        value: Any,
        ttl_s: float | None = None,
        product_name: str = "",
        keywords: Sequence[str] = (),
    ) -> None:
        ttl = self._default_ttl_s if ttl_s is None else ttl_s
        now = self._now()
        envelope = {
            "value": value,
            "product_name": product_name,
            "keywords": list(keywords),
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=ttl)).isoformat(),
        }
        self._client.set(
            f"{_KEY_PREFIX}{key}",
            json.dumps(envelope, ensure_ascii=False),
            ex=max(1, math.ceil(ttl)),
        )
        self._client.sadd(_INDEX_KEY, key)
        self._client.hdel(_HITS_KEY, key)

    async def has(self, key: str) -> bool:
        return self._load(key) is not None

    async def delete(self, key: str) -> None:
        self._client.delete(f"{_KEY_PREFIX}{key}")
        self._client.srem(_INDEX_KEY, key)
        self._client.hdel(_HITS_KEY, key)

    async def increment_hit(self, key: str) -> None:
        self._client.hincrby(_HITS_KEY, key, 1)

    def _indexed(self) -> list[tuple[str, dict[str, Any] | None]]:
        entries = []
        for key in sorted(self._client.smembers(_INDEX_KEY)):
            raw = self._client.get(f"{_KEY_PREFIX}{key}")
            entries.append((key, json.loads(raw) if raw is not None else None))
        return entries

    async def prune(self) -> int:
        """Drop index members whose entry has expired or vanished."""
        now = self._now()
        removed = 0
        for key, envelope in self._indexed():
            if envelope is None or datetime.fromisoformat(envelope["expires_at"]) <= now:
                await self.delete(key)
                removed += 1
        if removed:
            logger.info("Pruned %d expired L2 cache entries", removed)
        return removed

    async def invalidate_product(self, product_name: str) -> int:
        target = product_name.strip().lower()
        removed = 0
        for key, envelope in self._indexed():
            if envelope is not None and envelope["product_name"].strip().lower() == target:
                await self.delete(key)
                removed += 1
        return removed

    async def clear(self) -> None:
        for key in self._client.smembers(_INDEX_KEY):
            self._client.delete(f"{_KEY_PREFIX}{key}")
        self._client.delete(_INDEX_KEY)
        self._client.delete(_HITS_KEY)

    async def stats(self) -> L2CacheStats:
        now = self._now()
        hits_by_key = self._client.hgetall(_HITS_KEY) or {}
        total = 0
        expired = 0
        total_hits = 0
        created: list[datetime] = []
        for key, envelope in self._indexed():
            if envelope is None:
                continue
            total += 1
            total_hits += int(hits_by_key.get(key, 0))
            created.append(datetime.fromisoformat(envelope["created_at"]))
            if datetime.fromisoformat(envelope["expires_at"]) <= now:
                expired += 1
        return L2CacheStats(
            total_entries=total,
            total_hits=total_hits,
            expired_entries=expired,
            avg_hit_count=round(total_hits / total, 2) if total else 0.0,
            oldest_entry=min(created) if created else None,
            newest_entry=max(created) if created else None,
        )

    def close(self) -> None:
        """Close the Redis connection."""
        self._client.close()
