import asyncio
import time
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from keygate.core.auth_gate import AuthGate, quota_headers
from keygate.core.errors import (
    ExpiredKey,
    InactiveKey,
    InvalidCredential,
    MissingCredential,
    QuotaExceeded,
    StorageUnavailable,
)
from keygate.core.rate_limit import MemoryRateLimiter, RateLimitResult
from keygate.core.timeutil import utcnow


@pytest.fixture
def memory_gate(key_store, recorder):
    return AuthGate(key_store, MemoryRateLimiter(), recorder, timeout=5.0)


async def test_missing_credential_required(gate):
    with pytest.raises(MissingCredential):
        await gate.authenticate(None)
    with pytest.raises(MissingCredential):
        await gate.authenticate("")


async def test_missing_credential_optional_passes_without_key(gate):
    assert await gate.authenticate(None, required=False) is None


async def test_optional_auth_still_checks_presented_credential(gate):
    with pytest.raises(InvalidCredential):
        await gate.authenticate("kg_" + "a" * 43, required=False)


async def test_malformed_and_unknown_credentials(gate):
    with pytest.raises(InvalidCredential):
        await gate.authenticate("garbage")
    with pytest.raises(InvalidCredential):
        await gate.authenticate("kg_" + "b" * 43)


async def test_admits_active_key(gate, key_store):
    api_key, plain = await key_store.create("ok", rate_limit=5, rate_window=60)

    ctx = await gate.authenticate(plain)

    assert ctx.api_key.id == api_key.id
    assert ctx.quota.allowed and ctx.quota.remaining == 4


async def test_inactive_key_rejected_even_though_hash_resolves(gate, key_store):
    api_key, plain = await key_store.create("off")
    await key_store.update(api_key.id, {"state": "inactive"})

    with pytest.raises(InactiveKey):
        await gate.authenticate(plain)


async def test_expired_key_rejected_while_still_active(gate, key_store):
    _, plain = await key_store.create("old", expires_at=utcnow() - timedelta(seconds=1))

    with pytest.raises(ExpiredKey):
        await gate.authenticate(plain)


async def test_future_expiry_is_admitted(gate, key_store):
    _, plain = await key_store.create("soon", expires_at=utcnow() + timedelta(hours=1))
    assert await gate.authenticate(plain) is not None


async def test_quota_exceeded_carries_retry_after(memory_gate, key_store):
    api_key, plain = await key_store.create("tight", rate_limit=2, rate_window=60)
    now = float(int(time.time()))

    first = await memory_gate.authenticate(plain, now=now)
    second = await memory_gate.authenticate(plain, now=now + 1)
    with pytest.raises(QuotaExceeded) as excinfo:
        await memory_gate.authenticate(plain, now=now + 2)

    assert (first.quota.remaining, second.quota.remaining) == (1, 0)
    exc = excinfo.value
    assert exc.api_key_id == api_key.id
    assert exc.retry_after == 58
    assert exc.headers["Retry-After"] == "58"
    assert exc.headers["X-RateLimit-Remaining"] == "0"
    assert exc.to_body()["code"] == "RATE_LIMIT_EXCEEDED"

    fourth = await memory_gate.authenticate(plain, now=now + 61)
    assert fourth.quota.remaining == 1


async def test_bypass_quota_skips_limiter(memory_gate, key_store):
    _, plain = await key_store.create("bypass", rate_limit=1, rate_window=60)

    for _ in range(5):
        ctx = await memory_gate.authenticate(plain, bypass_quota=True)
        assert ctx.quota is None


async def test_rejected_state_never_touches_limiter(key_store, recorder):
    class ExplodingLimiter:
        async def check_and_consume(self, api_key, now=None):
            raise AssertionError("limiter must not be reached")

    gate = AuthGate(key_store, ExplodingLimiter(), recorder)
    api_key, plain = await key_store.create("off", rate_limit=1, rate_window=60)
    await key_store.update(api_key.id, {"state": "inactive"})

    with pytest.raises(InactiveKey):
        await gate.authenticate(plain)


async def test_limiter_outage_fails_closed(key_store, recorder):
    class DownLimiter:
        async def check_and_consume(self, api_key, now=None):
            raise RedisConnectionError("connection refused")

    gate = AuthGate(key_store, DownLimiter(), recorder)
    _, plain = await key_store.create("limited", rate_limit=5, rate_window=60)

    with pytest.raises(StorageUnavailable):
        await gate.authenticate(plain)


async def test_slow_storage_times_out_as_unavailable(key_store, recorder):
    class SlowLimiter:
        async def check_and_consume(self, api_key, now=None):
            await asyncio.sleep(5)

    gate = AuthGate(key_store, SlowLimiter(), recorder, timeout=0.05)
    _, plain = await key_store.create("slow", rate_limit=5, rate_window=60)

    with pytest.raises(StorageUnavailable):
        await gate.authenticate(plain)


async def test_key_store_outage_fails_closed(recorder):
    class DownStore:
        async def find_by_hash(self, key_hash):
            raise StorageUnavailable()

    gate = AuthGate(DownStore(), MemoryRateLimiter(), recorder)

    with pytest.raises(StorageUnavailable):
        await gate.authenticate("kg_" + "c" * 43)


def test_quota_headers_omitted_for_unlimited():
    assert quota_headers(None) == {}
    assert quota_headers(RateLimitResult(True, None, None, None)) == {}
    assert quota_headers(RateLimitResult(True, 10, 3, 1700000000)) == {
        "X-RateLimit-Limit": "10",
        "X-RateLimit-Remaining": "3",
        "X-RateLimit-Reset": "1700000000",
    }
