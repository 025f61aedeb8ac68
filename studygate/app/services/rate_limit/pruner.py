"""Background pruning of expired admission events."""

import asyncio
from typing import Optional

from studygate.app.core.logging import get_logger
from studygate.app.exceptions import StorageUnavailableError
from studygate.app.services.rate_limit.backends import WindowStore

logger = get_logger(__name__)


class WindowPruner:
    """Periodically deletes admission events older than the longest window.

    Events older than every configured window can never affect a decision
    again. start() during application startup, shutdown() on exit.
    """

    def __init__(self, store: WindowStore, retention_seconds: float, interval: float = 3600.0):
        self.store = store
        self.retention_seconds = retention_seconds
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._started = False

    def start(self) -> None:
        if not self._started:
            self._shutdown_event.clear()
            self._task = asyncio.create_task(self._prune_loop())
            self._started = True
            logger.debug("WindowPruner started")

    async def shutdown(self) -> None:
        self._shutdown_event.set()
        if self._started and self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._started = False
        self._task = None
        logger.debug("WindowPruner stopped")

    async def prune_once(self) -> int:
        """Run one pruning pass. Returns the number of events removed."""
        try:
            cutoff = await self.store.now() - self.retention_seconds
            removed = await self.store.prune(cutoff)
        except StorageUnavailableError as e:
            logger.warning(f"Admission event pruning failed: {e}")
            return 0
        if removed:
            logger.info(f"Pruned {removed} expired admission events")
        return removed

    async def _prune_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

            if not self._shutdown_event.is_set():
                await self.prune_once()
