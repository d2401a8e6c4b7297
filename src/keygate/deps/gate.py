from keygate.config import settings
from keygate.core.auth_gate import AuthGate
from keygate.core.key_store import KeyStore
from keygate.core.rate_limit import MemoryRateLimiter, RedisRateLimiter
from keygate.core.sweeper import ExpiredKeySweeper
from keygate.core.usage_logging import UsageRecorder
from keygate.deps import redis as redis_deps
from keygate.deps.db import SessionLocal

auth_gate: AuthGate | None = None
sweeper: ExpiredKeySweeper | None = None


def _build_limiter():
    if settings.rate_limit_backend == "memory":
        return MemoryRateLimiter()
    if settings.rate_limit_backend == "redis":
        return RedisRateLimiter(redis_deps.get_redis)
    raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {settings.rate_limit_backend}")


def get_auth_gate() -> AuthGate:
    global auth_gate
    if auth_gate is None:
        auth_gate = AuthGate(
            key_store=KeyStore(SessionLocal),
            limiter=_build_limiter(),
            recorder=UsageRecorder(SessionLocal, timeout=settings.storage_timeout_seconds),
            timeout=settings.storage_timeout_seconds,
        )
    return auth_gate


def get_key_store() -> KeyStore:
    return get_auth_gate().key_store


def get_sweeper() -> ExpiredKeySweeper:
    global sweeper
    if sweeper is None:
        sweeper = ExpiredKeySweeper(get_key_store(), settings.expiry_sweep_interval_seconds)
    return sweeper


def reset_services() -> None:
    global auth_gate, sweeper
    auth_gate = None
    sweeper = None
