"""
Fixed-window rate limiting per API key.

A key's window opens on its first request and lasts ``rate_window``
seconds; the next request after that opens a fresh one. Bursts of up to
2x the limit across a window boundary are accepted.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from redis.asyncio import Redis

from keygate.models.api_key import ApiKey


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int | None
    remaining: int | None
    reset_epoch: int | None

    @property
    def unlimited(self) -> bool:
        return self.limit is None

    def retry_after(self, now: float) -> int:
        if self.reset_epoch is None:
            return 0
        return max(1, math.ceil(self.reset_epoch - now))


UNLIMITED = RateLimitResult(allowed=True, limit=None, remaining=None, reset_epoch=None)


class RedisRateLimiter:
    """Window state lives in Redis so every instance enforces the same count."""

    def __init__(self, get_redis: Callable[[], Awaitable[Redis]], namespace: str = "rl"):
        self.get_redis = get_redis
        self.namespace = namespace

    def _key(self, key_id) -> str:
        return f"{self.namespace}:{key_id}"

    async def check_and_consume(self, api_key: ApiKey, now: float | None = None) -> RateLimitResult:
        if api_key.is_unlimited:
            return UNLIMITED

        now = time.time() if now is None else now
        limit = int(api_key.rate_limit)
        window_ms = int(api_key.rate_window) * 1000
        redis_key = self._key(api_key.id)

        # MULTI/EXEC: open the window if absent, count, read what is left of it
        r = await self.get_redis()
        pipe = r.pipeline(transaction=True)
        pipe.set(redis_key, 0, nx=True, px=window_ms)
        pipe.incr(redis_key)
        pipe.pttl(redis_key)
        _, count, pttl = await pipe.execute()

        if pttl is None or pttl < 0:
            pttl = window_ms

        reset_epoch = math.ceil(now + pttl / 1000)
        return RateLimitResult(
            allowed=count <= limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset_epoch=reset_epoch,
        )

    async def reset(self, key_id) -> None:
        r = await self.get_redis()
        await r.delete(self._key(key_id))


class _Window:
    __slots__ = ("start", "count", "lock")

    def __init__(self):
        self.start = 0.0
        self.count = 0
        self.lock = threading.Lock()


class MemoryRateLimiter:
    """Per-process windows; only correct when a single instance serves traffic."""

    def __init__(self):
        self._windows: dict[str, _Window] = {}
        self._registry_lock = threading.Lock()

    def _window(self, key_id) -> _Window:
        with self._registry_lock:
            window = self._windows.get(str(key_id))
            if window is None:
                window = self._windows[str(key_id)] = _Window()
            return window

    async def check_and_consume(self, api_key: ApiKey, now: float | None = None) -> RateLimitResult:
        if api_key.is_unlimited:
            return UNLIMITED

        now = time.time() if now is None else now
        limit = int(api_key.rate_limit)
        window_s = int(api_key.rate_window)
        window = self._window(api_key.id)

        with window.lock:
            if window.count == 0 or now >= window.start + window_s:
                window.start = now
                window.count = 0

            reset_epoch = math.ceil(window.start + window_s)
            if window.count < limit:
                window.count += 1
                return RateLimitResult(
                    allowed=True,
                    limit=limit,
                    remaining=limit - window.count,
                    reset_epoch=reset_epoch,
                )

        return RateLimitResult(allowed=False, limit=limit, remaining=0, reset_epoch=reset_epoch)

    async def reset(self, key_id) -> None:
        with self._registry_lock:
            self._windows.pop(str(key_id), None)
