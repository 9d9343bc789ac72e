"""Tests for the process-local cache used in test mode and dev fallback."""

import pytest

from authmail.service.runtime import check_rate_limit, get_runtime
from authmail.storage.redis_cache import MemoryCache, RedisCache


class TestMemoryCache:
    @pytest.mark.asyncio
    async def test_set_get_delete(self):
        cache = MemoryCache()

        await cache.set_with_ttl("verification:a@example.com", "123456", 900)

        assert await cache.get("verification:a@example.com") == "123456"
        assert await cache.exists("verification:a@example.com")
        assert await cache.delete("verification:a@example.com") == 1
        assert await cache.get("verification:a@example.com") is None
        assert await cache.delete("verification:a@example.com") == 0

    @pytest.mark.asyncio
    async def test_entries_expire(self):
        cache = MemoryCache()

        await cache.set_with_ttl("reset:a@example.com", "654321", 60)
        value, _ = cache._entries["reset:a@example.com"]
        cache._entries["reset:a@example.com"] = (value, 0.0)

        assert await cache.get("reset:a@example.com") is None
        assert not await cache.exists("reset:a@example.com")

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_bucket(self):
        cache = MemoryCache()

        results = [
            await cache.check_rate_limit("auth:login:10.0.0.1", 3, 60, return_remaining=True)
            for _ in range(4)
        ]

        assert [r[0] for r in results] == [True, True, True, False]
        assert results[2][1] == 0
        assert results[3][2] >= 1

    @pytest.mark.asyncio
    async def test_rate_limit_keys_independent(self):
        cache = MemoryCache()

        assert await cache.check_rate_limit("auth:login:a", 1, 60)
        assert not await cache.check_rate_limit("auth:login:a", 1, 60)
        assert await cache.check_rate_limit("auth:login:b", 1, 60)


class TestRuntimeCache:
    def test_test_mode_uses_memory_cache(self):
        assert isinstance(get_runtime().cache, MemoryCache)

    def test_rate_key_hashed(self):
        key = RedisCache._normalize_rate_key("auth:login:10.0.0.1")

        assert key.startswith("rate:")
        assert "10.0.0.1" not in key

    @pytest.mark.asyncio
    async def test_non_positive_limit_disables_check(self):
        assert await check_rate_limit(get_runtime(), "any", 0, 60) is True


class TestMemoryCachePruning:
    @pytest.mark.asyncio
    async def test_expired_entries_swept_on_write(self):
        cache = MemoryCache()
        cache._entries["verification:stale@example.com"] = ("123456", 0.0)
        cache._next_prune = 0.0

        await cache.set_with_ttl("verification:fresh@example.com", "654321", 900)

        assert "verification:stale@example.com" not in cache._entries
        assert await cache.get("verification:fresh@example.com") == "654321"

    @pytest.mark.asyncio
    async def test_refilled_buckets_swept(self):
        cache = MemoryCache()
        cache._buckets["auth:login:10.0.0.1"] = (0.0, 0.0, 0.0)
        cache._next_prune = 0.0

        assert await cache.check_rate_limit("auth:login:10.0.0.2", 3, 60)

        assert "auth:login:10.0.0.1" not in cache._buckets
        assert "auth:login:10.0.0.2" in cache._buckets

    @pytest.mark.asyncio
    async def test_sweep_waits_for_interval(self):
        cache = MemoryCache()
        cache._entries["reset:stale@example.com"] = ("123456", 0.0)

        await cache.set_with_ttl("reset:fresh@example.com", "654321", 900)

        assert "reset:stale@example.com" in cache._entries

    @pytest.mark.asyncio
    async def test_drained_bucket_kept_until_refilled(self):
        cache = MemoryCache()
        assert await cache.check_rate_limit("auth:login:a", 1, 60)
        cache._next_prune = 0.0

        assert await cache.check_rate_limit("auth:login:b", 1, 60)

        assert not await cache.check_rate_limit("auth:login:a", 1, 60)
