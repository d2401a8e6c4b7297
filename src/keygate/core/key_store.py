"""
Durable CRUD over API key records.

The store owns its sessions so the auth path, the admin surface and the
expiry sweeper can share one instance. Plaintext secrets only ever leave
``create`` and ``rotate``.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keygate.config import settings
from keygate.core.errors import DuplicateHash, NotFound, StorageUnavailable, ValidationError
from keygate.core.keys import generate_plaintext_key, hash_key, key_prefix
from keygate.core.timeutil import as_utc, utcnow
from keygate.models.api_key import ApiKey, KeyState
from keygate.models.audit_log import AuditAction, AuditLog
from keygate.models.endpoint_usage import EndpointUsage
from keygate.models.usage_log import UsageLog

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = {"label", "state", "rate_limit", "rate_window", "expires_at"}
GENERATION_ATTEMPTS = 2


@contextmanager
def storage_errors():
    try:
        yield
    except (SQLAlchemyError, OSError) as exc:
        if isinstance(exc, IntegrityError):
            raise
        logger.error("storage_unavailable", extra={"error": type(exc).__name__})
        raise StorageUnavailable() from exc


def _validate_label(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("label must be a string")
    value = value.strip()
    if not 1 <= len(value) <= 100:
        raise ValidationError("label must be 1-100 characters")
    return value


def _validate_positive(name: str, value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{name} must be a positive integer")
    return value


def _validate_state(value: Any) -> KeyState:
    try:
        return KeyState(value)
    except ValueError:
        raise ValidationError("state must be 'active' or 'inactive'") from None


def _validate_expires_at(value: Any) -> datetime | None:
    if value is not None and not isinstance(value, datetime):
        raise ValidationError("expires_at must be a timestamp")
    return as_utc(value)


def _apply_quota(api_key: ApiKey, rate_limit: int | None, rate_window: int | None) -> None:
    if rate_limit is None:
        # unlimited; a dangling window means nothing
        api_key.rate_limit = None
        api_key.rate_window = None
        return
    api_key.rate_limit = rate_limit
    api_key.rate_window = rate_window or api_key.rate_window or settings.default_rate_window


def _audit(session: AsyncSession, action: AuditAction, api_key_id: uuid.UUID | None = None, **details) -> None:
    session.add(AuditLog(ts=utcnow(), action=action.value, api_key_id=api_key_id, details=details))


class KeyStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(
        self,
        label: str,
        rate_limit: int | None = None,
        rate_window: int | None = None,
        expires_at: datetime | None = None,
    ) -> tuple[ApiKey, str]:
        label = _validate_label(label)
        rate_limit = _validate_positive("rate_limit", rate_limit)
        rate_window = _validate_positive("rate_window", rate_window)
        expires_at = _validate_expires_at(expires_at)

        for attempt in range(GENERATION_ATTEMPTS):
            plain = generate_plaintext_key()
            now = utcnow()
            api_key = ApiKey(
                key_hash=hash_key(plain),
                key_prefix=key_prefix(plain),
                label=label,
                state=KeyState.ACTIVE,
                expires_at=expires_at,
                total_requests=0,
                total_errors=0,
                created_at=now,
                updated_at=now,
            )
            _apply_quota(api_key, rate_limit, rate_window)

            with storage_errors():
                async with self.session_factory() as session:
                    session.add(api_key)
                    try:
                        await session.flush()
                        _audit(
                            session,
                            AuditAction.CREATE_KEY,
                            api_key.id,
                            label=api_key.label,
                            key_prefix=api_key.key_prefix,
                        )
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        logger.warning("key_hash_collision", extra={"attempt": attempt + 1})
                        continue
                    await session.refresh(api_key)

            logger.info("api_key_created", extra={"api_key_id": str(api_key.id)})
            return api_key, plain

        raise DuplicateHash()

    async def find_by_hash(self, key_hash: str) -> ApiKey:
        with storage_errors():
            async with self.session_factory() as session:
                res = await session.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
                api_key = res.scalar_one_or_none()
        if api_key is None:
            raise NotFound("API key not found")
        return api_key

    async def find_by_id(self, key_id: uuid.UUID) -> ApiKey:
        with storage_errors():
            async with self.session_factory() as session:
                api_key = await session.get(ApiKey, key_id)
        if api_key is None:
            raise NotFound("API key not found")
        return api_key

    async def update(self, key_id: uuid.UUID, fields: dict[str, Any]) -> ApiKey:
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields not updatable: {', '.join(sorted(unknown))}")

        values: dict[str, Any] = {}
        if "label" in fields:
            values["label"] = _validate_label(fields["label"])
        if "state" in fields:
            values["state"] = _validate_state(fields["state"])
        if "rate_limit" in fields:
            values["rate_limit"] = _validate_positive("rate_limit", fields["rate_limit"])
        if "rate_window" in fields:
            values["rate_window"] = _validate_positive("rate_window", fields["rate_window"])
        if "expires_at" in fields:
            values["expires_at"] = _validate_expires_at(fields["expires_at"])

        with storage_errors():
            async with self.session_factory() as session:
                api_key = await session.get(ApiKey, key_id, with_for_update=True)
                if api_key is None:
                    raise NotFound("API key not found")

                previous_state = api_key.state
                for name in ("label", "state", "expires_at"):
                    if name in values:
                        setattr(api_key, name, values[name])

                if "rate_limit" in values or "rate_window" in values:
                    rate_limit = values.get("rate_limit", api_key.rate_limit)
                    rate_window = values.get("rate_window", api_key.rate_window)
                    if rate_limit is None and values.get("rate_window") is not None:
                        raise ValidationError("rate_window requires rate_limit")
                    _apply_quota(api_key, rate_limit, rate_window)

                api_key.updated_at = utcnow()

                action = AuditAction.UPDATE_KEY
                if api_key.state != previous_state:
                    action = (
                        AuditAction.ACTIVATE_KEY
                        if api_key.state == KeyState.ACTIVE
                        else AuditAction.DEACTIVATE_KEY
                    )
                _audit(session, action, api_key.id, fields=sorted(values))

                await session.commit()
                await session.refresh(api_key)

        logger.info("api_key_updated", extra={"api_key_id": str(key_id), "fields": sorted(values)})
        return api_key

    async def rotate(self, key_id: uuid.UUID) -> tuple[ApiKey, str]:
        for attempt in range(GENERATION_ATTEMPTS):
            plain = generate_plaintext_key()
            with storage_errors():
                async with self.session_factory() as session:
                    api_key = await session.get(ApiKey, key_id, with_for_update=True)
                    if api_key is None:
                        raise NotFound("API key not found")

                    api_key.key_hash = hash_key(plain)
                    api_key.key_prefix = key_prefix(plain)
                    api_key.updated_at = utcnow()
                    try:
                        await session.flush()
                        _audit(session, AuditAction.ROTATE_KEY, api_key.id, key_prefix=api_key.key_prefix)
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        logger.warning("key_hash_collision", extra={"attempt": attempt + 1})
                        continue
                    await session.refresh(api_key)

            logger.info("api_key_rotated", extra={"api_key_id": str(key_id)})
            return api_key, plain

        raise DuplicateHash()

    async def delete(self, key_id: uuid.UUID) -> None:
        with storage_errors():
            async with self.session_factory() as session:
                async with session.begin():
                    api_key = await session.get(ApiKey, key_id, with_for_update=True)
                    if api_key is None:
                        raise NotFound("API key not found")
                    label, prefix = api_key.label, api_key.key_prefix

                    # not every backend enforces ON DELETE CASCADE
                    await session.execute(delete(UsageLog).where(UsageLog.api_key_id == key_id))
                    await session.execute(delete(EndpointUsage).where(EndpointUsage.api_key_id == key_id))
                    await session.execute(
                        delete(ApiKey).where(ApiKey.id == key_id).execution_options(synchronize_session=False)
                    )
                    _audit(session, AuditAction.DELETE_KEY, key_id, label=label, key_prefix=prefix)

        logger.info("api_key_deleted", extra={"api_key_id": str(key_id)})

    async def list(self, state: KeyState | None = None, q: str | None = None) -> list[ApiKey]:
        """Newest first. ``q`` matches a label substring (any case) or the start of the key prefix."""
        stmt = select(ApiKey).order_by(ApiKey.created_at.desc(), ApiKey.id)
        if state is not None:
            stmt = stmt.where(ApiKey.state == state)
        if q and q.strip():
            q = q.strip()
            stmt = stmt.where(
                or_(
                    func.lower(ApiKey.label).contains(q.lower(), autoescape=True),
                    ApiKey.key_prefix.startswith(q, autoescape=True),
                )
            )

        with storage_errors():
            async with self.session_factory() as session:
                res = await session.execute(stmt)
                return list(res.scalars().all())

    async def deactivate_expired(self, now: datetime | None = None) -> int:
        now = as_utc(now) or utcnow()
        with storage_errors():
            async with self.session_factory() as session:
                res = await session.execute(
                    update(ApiKey)
                    .where(
                        ApiKey.state == KeyState.ACTIVE,
                        ApiKey.expires_at.is_not(None),
                        ApiKey.expires_at <= now,
                    )
                    .values(state=KeyState.INACTIVE, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount:
                    _audit(session, AuditAction.CLEANUP_EXPIRED, count=res.rowcount)
                await session.commit()

        count = res.rowcount or 0
        if count:
            logger.info("expired_keys_deactivated", extra={"count": count})
        return count
