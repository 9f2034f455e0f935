"""
Background cache janitor.

Runs a periodic loop that evicts cache entries past their maximum age, so
console snapshots and list entries of nodes nobody polls anymore do not
pile up in memory.
"""

import asyncio
import logging

from .engine import AggregationEngine

logger = logging.getLogger(__name__)


class CacheJanitor:
    """Periodically calls engine.evict_expired()."""

    def __init__(self, engine: AggregationEngine, interval: float = 30.0):
        """
        Initialize the janitor.

        Args:
            engine: Engine whose caches are swept
            interval: Seconds between sweeps
        """
        self.engine = engine
        self.interval = interval
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the sweep loop."""
        if self._running:
            logger.warning("Cache janitor already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Cache janitor started (interval {self.interval}s)")

    async def stop(self) -> None:
        """Stop the sweep loop."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Cache janitor stopped")

    def sweep_once(self) -> int:
        evicted = self.engine.evict_expired()
        if evicted:
            logger.debug(f"Cache janitor evicted {evicted} entries")
        return evicted

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in cache janitor loop: {e}", exc_info=True)
