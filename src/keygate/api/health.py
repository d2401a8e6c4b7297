from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from keygate.config import settings
from keygate.deps.db import engine
from keygate.deps.redis import get_redis

router = APIRouter()


@router.get("/health")
async def health():
    checks = {"database": "ok", "redis": "skipped"}

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        checks["database"] = "unavailable"

    if settings.rate_limit_backend == "redis":
        try:
            r = await get_redis()
            checks["redis"] = "ok" if await r.ping() else "unknown"
        except Exception:
            checks["redis"] = "unavailable"

    healthy = "unavailable" not in checks.values()
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ok" if healthy else "degraded", **checks},
    )
