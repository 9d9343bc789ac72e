from __future__ import annotations

import hashlib
import threading
import time
from typing import Dict, Optional, Tuple, Union

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for short-lived codes and rate limits.

    Nothing stored here is authoritative: losing an entry only forces the
    user to request a new code.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Lua token bucket: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def delete(self, key: str) -> int:
        return int(await self.client.delete(key))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so caller-supplied values cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket."""
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        await self.client.aclose()


class MemoryCache:
    """Process-local stand-in for RedisCache used in tests and dev fallback.

    Same async surface as RedisCache. Entries expire lazily on read; expired
    entries and refilled buckets are swept on write at most once per
    ``PRUNE_INTERVAL_SECONDS``.
    """

    PRUNE_INTERVAL_SECONDS = 60.0

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[str, float]] = {}
        # key -> (tokens, last refill, time the bucket is full again)
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        self._lock = threading.Lock()
        self._next_prune = time.monotonic() + self.PRUNE_INTERVAL_SECONDS

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if not entry:
            return None
        value, expires_at = entry
        if expires_at <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return value

    def _prune(self, now: float) -> None:
        if now < self._next_prune:
            return
        self._next_prune = now + self.PRUNE_INTERVAL_SECONDS
        for key in [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]:
            del self._entries[key]
        for key in [k for k, (_, _, full_at) in self._buckets.items() if full_at <= now]:
            del self._buckets[key]

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        now = time.monotonic()
        with self._lock:
            self._prune(now)
            self._entries[key] = (value, now + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._entries.pop(key, None) else 0

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket with the same refill semantics as the Redis script."""
        now = time.monotonic()
        refill_rate = float(limit) / float(window_seconds)
        cost = max(1, cost)
        with self._lock:
            self._prune(now)
            tokens, last, _ = self._buckets.get(key, (float(limit), now, now))
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
            if tokens < cost:
                self._buckets[key] = (tokens, now, now + (limit - tokens) / refill_rate)
                reset_after = int(-(-(cost - tokens) // refill_rate))
                result = (False, max(0, int(tokens)), max(1, reset_after))
            else:
                tokens -= cost
                self._buckets[key] = (tokens, now, now + (limit - tokens) / refill_rate)
                result = (True, max(0, int(tokens)), 0)
        if return_remaining:
            return result
        return result[0]

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._buckets.clear()
