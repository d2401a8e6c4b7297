import asyncio
from datetime import timedelta

from keygate.core.errors import StorageUnavailable
from keygate.core.sweeper import ExpiredKeySweeper
from keygate.core.timeutil import utcnow
from keygate.models.api_key import KeyState


async def test_background_sweep_deactivates_expired_keys(key_store):
    expired, _ = await key_store.create("expired", expires_at=utcnow() - timedelta(seconds=1))
    sweeper = ExpiredKeySweeper(key_store, interval_seconds=0.05)

    sweeper.start()
    try:
        for _ in range(50):
            if (await key_store.find_by_id(expired.id)).state == KeyState.INACTIVE:
                break
            await asyncio.sleep(0.02)
    finally:
        await sweeper.stop()

    assert (await key_store.find_by_id(expired.id)).state == KeyState.INACTIVE


async def test_sweep_loop_survives_storage_outage():
    calls = []

    class FlakyStore:
        async def deactivate_expired(self, now):
            calls.append(now)
            if len(calls) == 1:
                raise StorageUnavailable()
            return 0

    sweeper = ExpiredKeySweeper(FlakyStore(), interval_seconds=0.01)
    sweeper.start()
    await asyncio.sleep(0.1)
    await sweeper.stop()

    assert len(calls) >= 2


async def test_stop_without_start_is_noop(key_store):
    await ExpiredKeySweeper(key_store, interval_seconds=1).stop()
