# src/cache/sqlite_store.py — v2
"""SQLite-based L2 cache store (CACHE_L2_BACKEND=sqlite).

Uses stdlib sqlite3; no external dependency. One row per cache key in the
generation_cache table; expiry is checked on read and purged by prune().
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Sequence

from geocopy.cache.base_cache_store import BaseL2Store
from geocopy.cache.models import L2CacheRecord, L2CacheStats

logger = logging.getLogger(__name__)

DEFAULT_L2_TTL_S = 24 * 60 * 60

_SCHEMA = """
CREATE TABLE IF NOT EXISTS generation_cache (
    cache_key TEXT PRIMARY KEY,
    product_name TEXT NOT NULL DEFAULT '',
    keywords TEXT NOT NULL DEFAULT '[]',
    result TEXT NOT NULL,
    hit_count INTEGER NOT NULL DEFAULT 0,
    last_accessed_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_generation_cache_expires ON generation_cache(expires_at);
CREATE INDEX IF NOT EXISTS idx_generation_cache_product ON generation_cache(product_name);
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    # Fixed width so that text comparison in SQL orders chronologically.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SqliteCacheStore(BaseL2Store):
    """SQLite-backed durable cache."""

    def __init__(
        self,
        db_path: Path | str,
        default_ttl_s: float = DEFAULT_L2_TTL_S,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        db_path = str(db_path)
        if db_path != ":memory:":
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            db_path = str(path)
        self._db_path = db_path
        self._default_ttl_s = default_ttl_s
        self._now = now
        self._conn = sqlite3.connect(db_path)
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    async def get(self, key: str) -> Any | None:
        """Return the stored value, or None when missing or expired."""
        cursor = self._conn.execute(
            "SELECT result FROM generation_cache WHERE cache_key = ? AND expires_at > ?",
            (key, _ts(self._now())),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except ValueError as e:
            logger.warning("Failed to deserialize cache entry %s: %s", key, e)
            return None

    async def get_record(self, key: str) -> L2CacheRecord | None:
        """Full row for key, regardless of expiry."""
        cursor = self._conn.execute(
            """SELECT cache_key, product_name, keywords, result, hit_count,
                      last_accessed_at, created_at, expires_at
               FROM generation_cache WHERE cache_key = ?""",
            (key,),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return L2CacheRecord(
            cache_key=row[0],
            product_name=row[1],
            keywords=json.loads(row[2]),
            value=json.loads(row[3]),
            hit_count=row[4],
            last_accessed_at=datetime.fromisoformat(row[5]),
            created_at=datetime.fromisoformat(row[6]),
            expires_at=datetime.fromisoformat(row[7]),
        )

    async def set(
        self,
        key: str,
        value: Any,
        ttl_s: float | None = None,
        product_name: str = "",
        keywords: Sequence[str] = (),
    ) -> None:
        """Store an entry (upsert)."""
        ttl = self._default_ttl_s if ttl_s is None else ttl_s
        now = self._now()
        self._conn.execute(
            """INSERT OR REPLACE INTO generation_cache
               (cache_key, product_name, keywords, result, hit_count,
                last_accessed_at, created_at, expires_at)
               VALUES (?, ?, ?, ?, 0, ?, ?, ?)""",
            (
                key,
                product_name,
                json.dumps(list(keywords), ensure_ascii=False),
                json.dumps(value, ensure_ascii=False),
                _ts(now),
                _ts(now),
                _ts(now + timedelta(seconds=ttl)),
            ),
        )
        self._conn.commit()

    async def has(self, key: str) -> bool:
        cursor = self._conn.execute(
            "SELECT 1 FROM generation_cache WHERE cache_key = ? AND expires_at > ?",
            (key, _ts(self._now())),
        )
        return cursor.fetchone() is not None

    async def delete(self, key: str) -> None:
        """Remove a cache entry."""
        self._conn.execute("DELETE FROM generation_cache WHERE cache_key = ?", (key,))
        self._conn.commit()

    async def increment_hit(self, key: str) -> None:
        self._conn.execute(
            """UPDATE generation_cache
               SET hit_count = hit_count + 1, last_accessed_at = ?
               WHERE cache_key = ?""",
            (_ts(self._now()), key),
        )
        self._conn.commit()

    async def prune(self) -> int:
        cursor = self._conn.execute(
            "DELETE FROM generation_cache WHERE expires_at <= ?",
            (_ts(self._now()),),
        )
        self._conn.commit()
        removed = cursor.rowcount
        if removed:
            logger.info("Pruned %d expired L2 cache entries", removed)
        return removed

    async def invalidate_product(self, product_name: str) -> int:
        cursor = self._conn.execute(
            "DELETE FROM generation_cache WHERE lower(product_name) = lower(?)",
            (product_name.strip(),),
        )
        self._conn.commit()
        return cursor.rowcount

    async def clear(self) -> None:
        self._conn.execute("DELETE FROM generation_cache")
        self._conn.commit()

    async def stats(self) -> L2CacheStats:
        cursor = self._conn.execute(
            """SELECT COUNT(*),
                      COALESCE(SUM(hit_count), 0),
                      COALESCE(SUM(CASE WHEN expires_at <= ? THEN 1 ELSE 0 END), 0),
                      COALESCE(AVG(hit_count), 0),
                      MIN(created_at),
                      MAX(created_at)
               FROM generation_cache""",
            (_ts(self._now()),),
        )
        total, hits, expired, avg_hits, oldest, newest = cursor.fetchone()
        return L2CacheStats(
            total_entries=total,
            total_hits=hits,
            expired_entries=expired,
            avg_hit_count=round(float(avg_hits), 2),
            oldest_entry=datetime.fromisoformat(oldest) if oldest else None,
            newest_entry=datetime.fromisoformat(newest) if newest else None,
        )

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
