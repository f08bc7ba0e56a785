# tests/unit/cache/test_redis_store.py — v2
"""Tests for cache/redis_store.py — dict-backed fake Redis client."""

from __future__ import annotations

import json
import sys
from unittest.mock import MagicMock

import pytest

from geocopy.cache.redis_store import RedisCacheStore


class FakeRedis:
    """Subset of the redis.Redis API used by RedisCacheStore."""

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.sets: dict[str, set[str]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.closed = False

    def get(self, key):
        return self.strings.get(key)

    def set(self, key, value, ex=None):
        self.strings[key] = value
        self.ttls[key] = ex

    def delete(self, key):
        self.strings.pop(key, None)
        self.sets.pop(key, None)
        self.hashes.pop(key, None)

    def sadd(self, key, member):
        self.sets.setdefault(key, set()).add(member)

    def srem(self, key, member):
        self.sets.get(key, set()).discard(member)

    def smembers(self, key):
        return set(self.sets.get(key, set()))

    def hincrby(self, key, field, amount):
        h = self.hashes.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)

    def hdel(self, key, field):
        self.hashes.get(key, {}).pop(field, None)

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def close(self):
        self.closed = True


@pytest.fixture
def client():
    return FakeRedis()


@pytest.fixture
def store(client, wall_clock):
    return RedisCacheStore(
        redis_url="redis://localhost", default_ttl_s=60, now=wall_clock, client=client
    )


class TestRedisCacheStore:
    def test_import_error_without_redis(self):
        """Clear ImportError when redis is not available."""
        redis_mod = sys.modules.get("redis")
        sys.modules["redis"] = None  # type: ignore[assignment]
        try:
            with pytest.raises(ImportError, match="redis"):
                RedisCacheStore(redis_url="redis://localhost")
        finally:
            if redis_mod is not None:
                sys.modules["redis"] = redis_mod
            else:
                sys.modules.pop("redis", None)

    @pytest.mark.asyncio
    async def test_set_and_get(self, store, client):
        await store.set("k1", {"a": 1}, product_name="Blender", keywords=["x"])
        assert await store.get("k1") == {"a": 1}
        envelope = json.loads(client.strings["geocopy:cache:k1"])
        assert envelope["product_name"] == "Blender"
        assert envelope["keywords"] == ["x"]
        assert client.ttls["geocopy:cache:k1"] == 60
        assert "k1" in client.smembers("geocopy:cache:__index__")

    @pytest.mark.asyncio
    async def test_fractional_ttl_rounds_up(self, store, client):
        await store.set("k1", 1, ttl_s=0.2)
        assert client.ttls["geocopy:cache:k1"] == 1

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_expired_envelope_is_miss(self, store, wall_clock):
        await store.set("k1", 1)
        wall_clock.advance(60)
        assert await store.get("k1") is None
        assert await store.has("k1") is False

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_miss(self, store, client):
        client.strings["geocopy:cache:bad"] = "{not json"
        assert await store.get("bad") is None

    @pytest.mark.asyncio
    async def test_delete(self, store, client):
        await store.set("k1", 1)
        await store.increment_hit("k1")
        await store.delete("k1")
        assert await store.get("k1") is None
        assert "k1" not in client.smembers("geocopy:cache:__index__")
        assert "k1" not in client.hgetall("geocopy:cache:__hits__")

    @pytest.mark.asyncio
    async def test_prune(self, store, wall_clock):
        await store.set("old", 1, ttl_s=10)
        await store.set("new", 2, ttl_s=100)
        wall_clock.advance(20)
        assert await store.prune() == 1
        assert await store.get("new") == 2

    @pytest.mark.asyncio
    async def test_prune_drops_vanished_keys(self, store, client):
        await store.set("k1", 1)
        del client.strings["geocopy:cache:k1"]  # expired natively in Redis
        assert await store.prune() == 1
        assert client.smembers("geocopy:cache:__index__") == set()

    @pytest.mark.asyncio
    async def test_invalidate_product(self, store):
        await store.set("k1", 1, product_name="Blender")
        await store.set("k2", 2, product_name=" blender ")
        await store.set("k3", 3, product_name="Toaster")
        assert await store.invalidate_product("BLENDER") == 2
        assert await store.get("k3") == 3

    @pytest.mark.asyncio
    async def test_clear(self, store, client):
        await store.set("k1", 1)
        await store.increment_hit("k1")
        await store.clear()
        assert await store.get("k1") is None
        assert client.smembers("geocopy:cache:__index__") == set()

    @pytest.mark.asyncio
    async def test_stats(self, store, wall_clock):
        await store.set("k1", 1, ttl_s=10)
        wall_clock.advance(5)
        await store.set("k2", 2)
        await store.increment_hit("k1")
        await store.increment_hit("k1")
        await store.increment_hit("k2")
        wall_clock.advance(10)
        stats = await store.stats()
        assert stats.total_entries == 2
        assert stats.total_hits == 3
        assert stats.expired_entries == 1
        assert stats.avg_hit_count == 1.5
        assert stats.oldest_entry < stats.newest_entry

    def test_close(self, store, client):
        store.close()
        assert client.closed is True

    def test_from_url(self, monkeypatch):
        fake_module = MagicMock()
        monkeypatch.setitem(sys.modules, "redis", fake_module)
        RedisCacheStore(redis_url="redis://cache:6379/0")
        fake_module.Redis.from_url.assert_called_once_with(
            "redis://cache:6379/0", decode_responses=True
        )
