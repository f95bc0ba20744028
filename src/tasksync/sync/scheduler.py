"""Periodic background sync."""

import asyncio
import logging
from typing import Optional

from .sync_engine import SyncEngine
from .sync_models import CycleResult


logger = logging.getLogger(__name__)


class AutoSyncScheduler:
    """Runs a sync cycle every ``interval`` seconds on the running event loop."""

    def __init__(self, engine: SyncEngine, interval: float):
        if interval <= 0:
            raise ValueError(f"Sync interval must be positive, got {interval}")
        self.engine = engine
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start the background loop. Calling it twice is a no-op."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Auto sync started (every {self.interval}s)")

    async def stop(self):
        """Cancel the loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Auto sync stopped")

    async def run_once(self) -> Optional[CycleResult]:
        """Run a single cycle; errors are logged and swallowed so the loop survives."""
        try:
            result = await self.engine.run_cycle()
        except Exception as e:
            logger.error(f"Auto sync cycle failed: {e}")
            return None

        if result.abort_reason is not None:
            logger.debug(f"Auto sync cycle skipped: {result.abort_reason.value}")
        return result

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()
