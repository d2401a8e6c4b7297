import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from keygate.core.key_store import storage_errors
from keygate.core.timeutil import as_utc, utcnow
from keygate.models.api_key import ApiKey
from keygate.models.endpoint_usage import EndpointUsage
from keygate.models.usage_log import UsageLog

logger = logging.getLogger(__name__)

UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

UNLOGGED_PREFIXES = ("/admin", "/health", "/docs", "/openapi.json")


@dataclass
class UsageOutcome:
    api_key_id: uuid.UUID
    endpoint: str
    method: str
    status_code: int
    latency_ms: int
    client_ip: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
    ts: datetime = field(default_factory=utcnow)

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400


class UsageRecorder:
    """
    Best-effort usage accounting.

    ``submit`` never blocks the caller; the write runs in a detached task and
    any failure is logged and dropped. Counters may therefore lag real traffic
    by the number of in-flight recordings.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], timeout: float = 2.0):
        self.session_factory = session_factory
        self.timeout = timeout
        self._tasks: set[asyncio.Task] = set()

    def submit(self, outcome: UsageOutcome) -> None:
        task = asyncio.create_task(self.record(outcome))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def record(self, outcome: UsageOutcome) -> None:
        try:
            await asyncio.wait_for(self._write(outcome), timeout=self.timeout)
        except Exception:
            logger.exception(
                "usage_record_failed",
                extra={"api_key_id": str(outcome.api_key_id), "request_id": outcome.request_id},
            )

    async def _write(self, outcome: UsageOutcome) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                # the counter UPDATE doubles as the existence check; a deleted key gets no rows
                res = await session.execute(
                    update(ApiKey)
                    .where(ApiKey.id == outcome.api_key_id)
                    .values(
                        total_requests=ApiKey.total_requests + 1,
                        total_errors=ApiKey.total_errors + (1 if outcome.is_error else 0),
                        last_used_at=outcome.ts,
                        last_used_from=outcome.client_ip,
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 0:
                    logger.info("usage_dropped_key_gone", extra={"api_key_id": str(outcome.api_key_id)})
                    return

                session.add(
                    UsageLog(
                        api_key_id=outcome.api_key_id,
                        endpoint=outcome.endpoint[:512],
                        method=outcome.method[:16],
                        status_code=outcome.status_code,
                        latency_ms=outcome.latency_ms,
                        ts=outcome.ts,
                        request_id=outcome.request_id,
                        client_ip=outcome.client_ip,
                        user_agent=(outcome.user_agent or "")[:512] or None,
                    )
                )

                insert = UPSERT_INSERTS[session.bind.dialect.name]
                table = EndpointUsage.__table__
                stmt = insert(table).values(
                    id=uuid.uuid4(),
                    api_key_id=outcome.api_key_id,
                    endpoint=outcome.endpoint[:512],
                    request_count=1,
                    error_count=1 if outcome.is_error else 0,
                    total_latency_ms=outcome.latency_ms,
                    last_used_at=outcome.ts,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.c.api_key_id, table.c.endpoint],
                    set_={
                        "request_count": table.c.request_count + 1,
                        "error_count": table.c.error_count + (1 if outcome.is_error else 0),
                        "total_latency_ms": table.c.total_latency_ms + outcome.latency_ms,
                        "last_used_at": outcome.ts,
                    },
                )
                await session.execute(stmt)

    async def purge_older_than(self, days: int, now: datetime | None = None) -> int:
        cutoff = (as_utc(now) or utcnow()) - timedelta(days=days)
        with storage_errors():
            async with self.session_factory() as session:
                res = await session.execute(delete(UsageLog).where(UsageLog.ts < cutoff))
                await session.commit()

        count = res.rowcount or 0
        logger.info("usage_logs_purged", extra={"count": count, "older_than_days": days})
        return count


class UsageLoggingMiddleware(BaseHTTPMiddleware):
    """
    Records usage for requests that resolved an API key
    (request.state.api_key_id is set by the client_key dependency).

    Runs after the response exists, so the status code and latency are real
    even when the handler raised.
    """

    def __init__(self, app, get_gate: Callable):
        super().__init__(app)
        self.get_gate = get_gate

    async def dispatch(self, request: Request, call_next: Callable):
        start = time.perf_counter()
        response: Response | None = None

        try:
            response = await call_next(request)
            return response
        finally:
            # latency in ms
            latency_ms = int((time.perf_counter() - start) * 1000)

            api_key_id = getattr(request.state, "api_key_id", None)
            path = request.url.path

            if api_key_id and not path.startswith(UNLOGGED_PREFIXES):
                status_code = response.status_code if response is not None else 500
                outcome = UsageOutcome(
                    api_key_id=api_key_id,
                    endpoint=path,
                    method=request.method,
                    status_code=status_code,
                    latency_ms=latency_ms,
                    client_ip=getattr(request.state, "client_ip", None),
                    user_agent=request.headers.get("user-agent"),
                    request_id=getattr(request.state, "request_id", None),
                )
                self.get_gate().record_usage(outcome)
