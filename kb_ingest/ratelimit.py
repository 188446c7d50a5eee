from __future__ import annotations

import asyncio
from dataclasses import dataclass
import time
from typing import Callable, Protocol

import redis.asyncio as redis

from kb_ingest.config import Settings


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int  # epoch milliseconds


class RateLimiter(Protocol):
    async def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult: ...


class MemoryRateLimiter:
    """Fixed-window counter kept in this process."""

    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self._clock = clock
        self._windows: dict[str, tuple[int, int]] = {}
        self._lock = asyncio.Lock()

    async def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        async with self._lock:
            now = self._clock()
            reset_at, count = self._windows.get(key, (0, 0))
            if reset_at <= now:
                reset_at, count = now + window_ms, 0
            if count >= limit:
                return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)
            count += 1
            self._windows[key] = (reset_at, count)
            return RateLimitResult(
                allowed=True, remaining=max(0, limit - count), reset_at=reset_at
            )


class RedisRateLimiter:
    script = """
    local count = redis.call("INCR", KEYS[1])
    if count == 1 then
        redis.call("PEXPIRE", KEYS[1], ARGV[1])
    end
    local ttl = redis.call("PTTL", KEYS[1])
    if ttl < 0 then
        redis.call("PEXPIRE", KEYS[1], ARGV[1])
        ttl = tonumber(ARGV[1])
    end
    return {count, ttl}
    """

    def __init__(self, client: redis.Redis, prefix: str | None = None) -> None:
        self._client = client
        prefix = prefix if prefix is not None else Settings.store_key_prefix
        self._prefix = f"{prefix}ratelimit:"

    async def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        count, ttl = await self._client.eval(
            self.script, 1, self._prefix + key, window_ms
        )
        count, ttl = int(count), int(ttl)
        reset_at = now_ms() + ttl
        if count > limit:
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)
        return RateLimitResult(allowed=True, remaining=limit - count, reset_at=reset_at)


def create_rate_limiter(backend: str | None = None) -> RateLimiter:
    backend = (backend or Settings.store_backend).lower()
    if backend == "redis":
        return RedisRateLimiter(redis.from_url(Settings.redis_url))
    return MemoryRateLimiter()
