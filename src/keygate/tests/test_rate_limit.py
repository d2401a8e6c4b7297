import asyncio
import uuid
from concurrent.futures import ThreadPoolExecutor

import fakeredis.aioredis
import pytest

from keygate.core.rate_limit import MemoryRateLimiter, RedisRateLimiter
from keygate.models.api_key import ApiKey


def make_key(rate_limit=None, rate_window=None) -> ApiKey:
    return ApiKey(id=uuid.uuid4(), rate_limit=rate_limit, rate_window=rate_window)


@pytest.fixture
async def fake():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def redis_limiter(fake):
    async def get_redis():
        return fake

    return RedisRateLimiter(get_redis)


# ---------------------------------------------------------------------------
# In-process windows
# ---------------------------------------------------------------------------

class TestMemoryRateLimiter:
    async def test_unlimited_always_admits(self):
        limiter = MemoryRateLimiter()
        key = make_key()
        for _ in range(100):
            result = await limiter.check_and_consume(key, now=1000.0)
            assert result.allowed
            assert result.unlimited
            assert result.remaining is None

    async def test_admits_limit_then_denies(self):
        limiter = MemoryRateLimiter()
        key = make_key(rate_limit=3, rate_window=60)

        results = [await limiter.check_and_consume(key, now=1000.0 + i) for i in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert results[3].reset_epoch == 1060
        assert results[3].retry_after(1003.0) == 57

    async def test_window_resets_after_duration(self):
        limiter = MemoryRateLimiter()
        key = make_key(rate_limit=2, rate_window=60)

        await limiter.check_and_consume(key, now=1000.0)
        await limiter.check_and_consume(key, now=1001.0)
        assert not (await limiter.check_and_consume(key, now=1059.9)).allowed

        result = await limiter.check_and_consume(key, now=1060.0)
        assert result.allowed
        assert result.remaining == 1
        assert result.reset_epoch == 1120

    async def test_denials_do_not_extend_window(self):
        limiter = MemoryRateLimiter()
        key = make_key(rate_limit=1, rate_window=10)

        await limiter.check_and_consume(key, now=0.0)
        for t in range(1, 10):
            assert not (await limiter.check_and_consume(key, now=float(t))).allowed
        assert (await limiter.check_and_consume(key, now=10.0)).allowed

    async def test_keys_are_independent(self):
        limiter = MemoryRateLimiter()
        a = make_key(rate_limit=1, rate_window=60)
        b = make_key(rate_limit=1, rate_window=60)

        assert (await limiter.check_and_consume(a, now=0.0)).allowed
        assert not (await limiter.check_and_consume(a, now=1.0)).allowed
        assert (await limiter.check_and_consume(b, now=1.0)).allowed

    async def test_reset_drops_window(self):
        limiter = MemoryRateLimiter()
        key = make_key(rate_limit=1, rate_window=60)

        await limiter.check_and_consume(key, now=0.0)
        await limiter.reset(key.id)
        assert (await limiter.check_and_consume(key, now=1.0)).allowed

    def test_parallel_threads_never_over_admit(self):
        limiter = MemoryRateLimiter()
        key = make_key(rate_limit=25, rate_window=60)

        def attempt(_):
            return asyncio.run(limiter.check_and_consume(key, now=5.0)).allowed

        with ThreadPoolExecutor(max_workers=16) as pool:
            admitted = sum(pool.map(attempt, range(200)))

        assert admitted == 25


# ---------------------------------------------------------------------------
# Redis-backed windows
# ---------------------------------------------------------------------------

class TestRedisRateLimiter:
    async def test_unlimited_skips_redis(self, redis_limiter, fake):
        result = await redis_limiter.check_and_consume(make_key())
        assert result.allowed and result.unlimited
        assert await fake.dbsize() == 0

    async def test_admits_exactly_limit(self, redis_limiter):
        key = make_key(rate_limit=3, rate_window=60)

        results = [await redis_limiter.check_and_consume(key, now=1000.0) for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert all(r.limit == 3 for r in results)
        assert 1000 < results[3].reset_epoch <= 1060

    async def test_window_has_ttl(self, redis_limiter, fake):
        key = make_key(rate_limit=5, rate_window=30)
        await redis_limiter.check_and_consume(key)

        ttl = await fake.ttl(f"rl:{key.id}")
        assert 0 < ttl <= 30

    async def test_concurrent_requests_never_over_admit(self, redis_limiter):
        key = make_key(rate_limit=3, rate_window=60)

        results = await asyncio.gather(*[redis_limiter.check_and_consume(key) for _ in range(20)])

        assert sum(r.allowed for r in results) == 3

    async def test_window_resets_after_expiry(self, redis_limiter):
        key = make_key(rate_limit=1, rate_window=1)

        assert (await redis_limiter.check_and_consume(key)).allowed
        assert not (await redis_limiter.check_and_consume(key)).allowed

        await asyncio.sleep(1.1)

        result = await redis_limiter.check_and_consume(key)
        assert result.allowed
        assert result.remaining == 0

    async def test_reset_deletes_window(self, redis_limiter, fake):
        key = make_key(rate_limit=1, rate_window=60)
        await redis_limiter.check_and_consume(key)

        await redis_limiter.reset(key.id)

        assert await fake.exists(f"rl:{key.id}") == 0
        assert (await redis_limiter.check_and_consume(key)).allowed
