"""
Pytest configuration for keygate tests.

The app reads its settings at import time, so the environment is prepared
before anything from keygate is imported: a throwaway SQLite file stands in
for PostgreSQL and fakeredis for Redis.
"""

import os
import tempfile

_test_data_dir = tempfile.mkdtemp(prefix="keygate_test_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_test_data_dir}/test.db"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["RATE_LIMIT_BACKEND"] = "redis"
os.environ["STORAGE_TIMEOUT_SECONDS"] = "10"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import fakeredis.aioredis
import pytest
from httpx import ASGITransport, AsyncClient

from keygate.deps import gate as gate_deps
from keygate.deps import redis as redis_deps
from keygate.deps.db import SessionLocal, engine
from keygate.models.base import Base

# Import all models so their tables are registered on Base.metadata
from keygate.models.api_key import ApiKey  # noqa: F401
from keygate.models.usage_log import UsageLog  # noqa: F401
from keygate.models.endpoint_usage import EndpointUsage  # noqa: F401
from keygate.models.audit_log import AuditLog  # noqa: F401


@pytest.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield SessionLocal

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # pooled aiosqlite connections are tied to this test's event loop
    await engine.dispose()


@pytest.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    redis_deps.redis_client = client
    yield client
    await client.flushall()
    await client.aclose()
    redis_deps.redis_client = None


@pytest.fixture
async def gate(db, redis_client):
    gate_deps.reset_services()
    g = gate_deps.get_auth_gate()
    yield g
    await g.recorder.drain()
    gate_deps.reset_services()


@pytest.fixture
def key_store(gate):
    return gate.key_store


@pytest.fixture
def recorder(gate):
    return gate.recorder


@pytest.fixture
async def client(gate):
    from keygate.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

