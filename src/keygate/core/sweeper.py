import asyncio
import logging

from keygate.core.errors import StorageUnavailable
from keygate.core.key_store import KeyStore
from keygate.core.timeutil import utcnow

logger = logging.getLogger(__name__)


class ExpiredKeySweeper:
    """Deactivates keys past expires_at on a fixed interval."""

    def __init__(self, key_store: KeyStore, interval_seconds: float):
        self.key_store = key_store
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    async def run_once(self) -> int:
        return await self.key_store.deactivate_expired(utcnow())

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except StorageUnavailable:
                logger.warning("expiry_sweep_skipped")
            except Exception:
                logger.exception("expiry_sweep_failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
