import logging
import uuid
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field, field_validator
from redis.exceptions import RedisError
from sqlalchemy import case, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.core.errors import ValidationError
from keygate.core.key_store import KeyStore
from keygate.core.timeutil import as_utc, utcnow
from keygate.deps.admin_auth import require_admin
from keygate.deps.db import get_db
from keygate.deps.gate import get_auth_gate, get_key_store, get_sweeper
from keygate.models.api_key import ApiKey, KeyState
from keygate.models.audit_log import AuditAction, AuditLog
from keygate.models.endpoint_usage import EndpointUsage
from keygate.models.usage_log import UsageLog

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class ApiKeyCreateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    label: str = Field(min_length=1, max_length=100)
    rate_limit: int | None = Field(default=None, ge=1, le=1_000_000)
    rate_window: int | None = Field(default=None, ge=1, le=86_400)
    expires_at: datetime | None = None


class ApiKeyUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    label: str | None = Field(default=None, min_length=1, max_length=100)
    state: KeyState | None = None
    rate_limit: int | None = Field(default=None, ge=1, le=1_000_000)
    rate_window: int | None = Field(default=None, ge=1, le=86_400)
    expires_at: datetime | None = None


class ApiKeyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    label: str
    key_prefix: str
    state: KeyState
    rate_limit: int | None
    rate_window: int | None
    expires_at: datetime | None
    total_requests: int
    total_errors: int
    last_used_at: datetime | None
    last_used_from: str | None
    created_at: datetime
    updated_at: datetime

    @field_validator("expires_at", "last_used_at", "created_at", "updated_at")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)


class ApiKeyCreateOut(ApiKeyOut):
    # plaintext secret; returned by create and rotate only
    api_key: str


class AuditLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    ts: datetime
    action: AuditAction
    api_key_id: uuid.UUID | None
    details: dict

    @field_validator("ts")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)


PERIODS = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


def _resolve_period(period: str) -> datetime:
    delta = PERIODS.get(period)
    if delta is None:
        raise ValidationError(f"period must be one of: {', '.join(PERIODS)}")
    return utcnow() - delta


def _log_out(e: UsageLog) -> dict:
    return {
        "id": str(e.id),
        "ts": as_utc(e.ts),
        "api_key_id": str(e.api_key_id),
        "method": e.method,
        "endpoint": e.endpoint,
        "status_code": e.status_code,
        "latency_ms": e.latency_ms,
        "request_id": e.request_id,
        "client_ip": e.client_ip,
        "user_agent": e.user_agent,
    }


@router.post("/keys", response_model=ApiKeyCreateOut)
async def create_api_key(payload: ApiKeyCreateIn, store: KeyStore = Depends(get_key_store)):
    api_key, plain = await store.create(
        label=payload.label,
        rate_limit=payload.rate_limit,
        rate_window=payload.rate_window,
        expires_at=payload.expires_at,
    )
    return ApiKeyCreateOut(**ApiKeyOut.model_validate(api_key).model_dump(), api_key=plain)


@router.get("/keys", response_model=list[ApiKeyOut])
async def list_api_keys(
    state: KeyState | None = None,
    q: str | None = Query(default=None, max_length=100),
    store: KeyStore = Depends(get_key_store),
):
    return await store.list(state=state, q=q)


@router.get("/audit", response_model=list[AuditLogOut])
async def list_audit_log(
    action: AuditAction | None = None,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
):
    limit = min(max(limit, 1), 200)

    stmt = select(AuditLog).order_by(desc(AuditLog.ts)).limit(limit)
    if action is not None:
        stmt = stmt.where(AuditLog.action == action.value)

    return (await db.execute(stmt)).scalars().all()


@router.post("/keys/sweep-expired")
async def sweep_expired_keys():
    deactivated = await get_sweeper().run_once()
    return {"status": "ok", "deactivated": deactivated}


@router.get("/keys/{key_id}", response_model=ApiKeyOut)
async def get_api_key(key_id: uuid.UUID, store: KeyStore = Depends(get_key_store)):
    return await store.find_by_id(key_id)


@router.patch("/keys/{key_id}", response_model=ApiKeyOut)
async def update_api_key(
    key_id: uuid.UUID,
    payload: ApiKeyUpdateIn,
    store: KeyStore = Depends(get_key_store),
):
    return await store.update(key_id, payload.model_dump(exclude_unset=True))


@router.delete("/keys/{key_id}")
async def delete_api_key(key_id: uuid.UUID, store: KeyStore = Depends(get_key_store)):
    await store.delete(key_id)

    try:
        await get_auth_gate().limiter.reset(key_id)
    except RedisError:
        # the window expires on its own
        logger.warning("rate_window_reset_failed", extra={"api_key_id": str(key_id)})

    return {"status": "deleted", "key_id": str(key_id)}


@router.post("/keys/{key_id}/rotate", response_model=ApiKeyCreateOut)
async def rotate_api_key(key_id: uuid.UUID, store: KeyStore = Depends(get_key_store)):
    api_key, plain = await store.rotate(key_id)
    return ApiKeyCreateOut(**ApiKeyOut.model_validate(api_key).model_dump(), api_key=plain)


@router.get("/keys/{key_id}/audit", response_model=list[AuditLogOut])
async def key_audit_log(key_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    # the trail survives deletion, so no existence check on the key
    stmt = select(AuditLog).where(AuditLog.api_key_id == key_id).order_by(desc(AuditLog.ts))
    return (await db.execute(stmt)).scalars().all()


@router.get("/keys/{key_id}/stats")
async def key_stats(
    key_id: uuid.UUID,
    period: str = "24h",
    store: KeyStore = Depends(get_key_store),
    db: AsyncSession = Depends(get_db),
):
    api_key = await store.find_by_id(key_id)
    since = _resolve_period(period)

    where = (UsageLog.api_key_id == key_id, UsageLog.ts >= since)

    totals = (
        await db.execute(
            select(
                func.count().label("count"),
                func.sum(case((UsageLog.status_code >= 400, 1), else_=0)).label("errors"),
                func.avg(UsageLog.latency_ms).label("avg_latency"),
            ).where(*where)
        )
    ).one()

    status_rows = (
        await db.execute(
            select(UsageLog.status_code, func.count().label("count"))
            .where(*where)
            .group_by(UsageLog.status_code)
            .order_by(UsageLog.status_code.asc())
        )
    ).all()

    endpoints = (
        await db.execute(
            select(EndpointUsage)
            .where(EndpointUsage.api_key_id == key_id)
            .order_by(desc(EndpointUsage.last_used_at))
        )
    ).scalars().all()

    recent = (
        await db.execute(select(UsageLog).where(*where).order_by(desc(UsageLog.ts)).limit(50))
    ).scalars().all()

    return {
        "key": ApiKeyOut.model_validate(api_key).model_dump(),
        "period": period,
        "from_ts": since,
        "requests": int(totals.count or 0),
        "errors": int(totals.errors or 0),
        "avg_latency_ms": round(float(totals.avg_latency or 0), 2),
        "by_status": {str(r.status_code): int(r.count) for r in status_rows},
        "endpoints": [
            {
                "endpoint": e.endpoint,
                "request_count": e.request_count,
                "error_count": e.error_count,
                "avg_latency_ms": round(e.total_latency_ms / max(e.request_count, 1), 2),
                "last_used_at": as_utc(e.last_used_at),
            }
            for e in endpoints
        ],
        "recent_logs": [_log_out(e) for e in recent],
    }


@router.get("/usage/overview")
async def usage_overview(period: str = "24h", db: AsyncSession = Depends(get_db)):
    since = _resolve_period(period)

    keys = (
        await db.execute(
            select(
                func.count().label("total"),
                func.sum(case((ApiKey.state == KeyState.ACTIVE, 1), else_=0)).label("active"),
            )
        )
    ).one()

    totals = (
        await db.execute(
            select(
                func.count().label("count"),
                func.sum(case((UsageLog.status_code >= 400, 1), else_=0)).label("errors"),
                func.avg(UsageLog.latency_ms).label("avg_latency"),
            ).where(UsageLog.ts >= since)
        )
    ).one()

    top_endpoints = (
        await db.execute(
            select(
                UsageLog.endpoint,
                func.count().label("requests"),
                func.sum(case((UsageLog.status_code >= 400, 1), else_=0)).label("errors"),
            )
            .where(UsageLog.ts >= since)
            .group_by(UsageLog.endpoint)
            .order_by(func.count().desc(), UsageLog.endpoint)
            .limit(10)
        )
    ).all()

    recent = (
        await db.execute(
            select(UsageLog, ApiKey.label, ApiKey.key_prefix)
            .join(ApiKey, ApiKey.id == UsageLog.api_key_id)
            .where(UsageLog.ts >= since)
            .order_by(desc(UsageLog.ts))
            .limit(20)
        )
    ).all()

    total_keys = int(keys.total or 0)
    active_keys = int(keys.active or 0)
    requests = int(totals.count or 0)
    errors = int(totals.errors or 0)
    success_rate = ((requests - errors) / requests) * 100 if requests else 100.0

    return {
        "period": period,
        "from_ts": since,
        "summary": {
            "total_keys": total_keys,
            "active_keys": active_keys,
            "inactive_keys": total_keys - active_keys,
            "requests": requests,
            "errors": errors,
            "success_rate": round(success_rate, 2),
            "avg_latency_ms": round(float(totals.avg_latency or 0), 2),
        },
        "top_endpoints": [
            {"endpoint": r.endpoint, "requests": int(r.requests or 0), "errors": int(r.errors or 0)}
            for r in top_endpoints
        ],
        "recent_activity": [
            {**_log_out(row.UsageLog), "label": row.label, "key_prefix": row.key_prefix}
            for row in recent
        ],
    }


@router.get("/usage/logs")
async def list_usage_logs(
    key_id: uuid.UUID | None = None,
    period: str = "24h",
    endpoint: str | None = None,
    status_code: int | None = None,
    method: str | None = None,
    limit: int = 50,
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
):
    limit = min(max(limit, 1), 200)
    offset = max(offset, 0)
    since = _resolve_period(period)

    where = [UsageLog.ts >= since]
    if key_id is not None:
        where.append(UsageLog.api_key_id == key_id)
    if endpoint:
        where.append(UsageLog.endpoint.contains(endpoint, autoescape=True))
    if status_code is not None:
        where.append(UsageLog.status_code == status_code)
    if method:
        where.append(UsageLog.method == method.upper())

    totals = (
        await db.execute(
            select(
                func.count().label("total"),
                func.sum(case((UsageLog.status_code >= 400, 1), else_=0)).label("errors"),
                func.avg(UsageLog.latency_ms).label("avg_latency"),
            ).where(*where)
        )
    ).one()

    rows = (
        await db.execute(
            select(UsageLog, ApiKey.label, ApiKey.key_prefix)
            .join(ApiKey, ApiKey.id == UsageLog.api_key_id)
            .where(*where)
            .order_by(desc(UsageLog.ts))
            .limit(limit)
            .offset(offset)
        )
    ).all()

    total = int(totals.total or 0)
    errors = int(totals.errors or 0)

    return {
        "period": period,
        "limit": limit,
        "offset": offset,
        "count": len(rows),
        "total": total,
        "stats": {
            "success_count": total - errors,
            "error_count": errors,
            "success_rate": round(((total - errors) / total) * 100, 2) if total else 100.0,
            "avg_latency_ms": round(float(totals.avg_latency or 0), 2),
        },
        "logs": [
            {**_log_out(row.UsageLog), "label": row.label, "key_prefix": row.key_prefix}
            for row in rows
        ],
    }


@router.delete("/usage/logs")
async def purge_usage_logs(older_than_days: int = Query(default=7, ge=0, le=3650)):
    deleted = await get_auth_gate().recorder.purge_older_than(older_than_days)
    return {"status": "ok", "deleted": deleted, "older_than_days": older_than_days}
