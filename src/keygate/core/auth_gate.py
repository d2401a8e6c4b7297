"""
Per-request authentication decision.

    credential -> hash/lookup -> state check -> quota check -> admitted

Each step either advances or raises a GatewayError; a request rejected
before the quota step never touches the rate limiter or the usage log.
Storage trouble anywhere on that path is a 503, never an admit.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from redis.exceptions import RedisError

from keygate.core.errors import (
    ExpiredKey,
    InactiveKey,
    InvalidCredential,
    MissingCredential,
    NotFound,
    QuotaExceeded,
    StorageUnavailable,
)
from keygate.core.key_store import KeyStore
from keygate.core.keys import hash_key, looks_like_key
from keygate.core.rate_limit import RateLimitResult
from keygate.core.timeutil import as_utc
from keygate.core.usage_logging import UsageOutcome, UsageRecorder
from keygate.models.api_key import ApiKey, KeyState

logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    api_key: ApiKey
    quota: RateLimitResult | None = None


def quota_headers(result: RateLimitResult | None) -> dict[str, str]:
    if result is None or result.unlimited:
        return {}
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_epoch),
    }


class AuthGate:
    def __init__(self, key_store: KeyStore, limiter, recorder: UsageRecorder, timeout: float = 2.0):
        self.key_store = key_store
        self.limiter = limiter
        self.recorder = recorder
        self.timeout = timeout

    async def _bounded(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except (asyncio.TimeoutError, RedisError, OSError) as exc:
            logger.error("auth_storage_unavailable", extra={"error": type(exc).__name__})
            raise StorageUnavailable() from exc

    async def authenticate(
        self,
        credential: str | None,
        *,
        required: bool = True,
        bypass_quota: bool = False,
        now: float | None = None,
    ) -> AuthContext | None:
        now = time.time() if now is None else now

        if not credential:
            if not required:
                return None
            raise MissingCredential()

        if not looks_like_key(credential):
            raise InvalidCredential()

        try:
            api_key = await self._bounded(self.key_store.find_by_hash(hash_key(credential)))
        except NotFound:
            raise InvalidCredential() from None

        if api_key.state != KeyState.ACTIVE:
            raise InactiveKey()

        expires_at = as_utc(api_key.expires_at)
        if expires_at is not None and expires_at <= datetime.fromtimestamp(now, timezone.utc):
            raise ExpiredKey()

        if bypass_quota:
            return AuthContext(api_key=api_key)

        result = await self._bounded(self.limiter.check_and_consume(api_key, now))
        if not result.allowed:
            logger.info("rate_limited", extra={"api_key_id": str(api_key.id)})
            raise QuotaExceeded(
                api_key_id=api_key.id,
                retry_after=result.retry_after(now),
                headers=quota_headers(result),
            )

        return AuthContext(api_key=api_key, quota=result)

    def record_usage(self, outcome: UsageOutcome) -> None:
        self.recorder.submit(outcome)
