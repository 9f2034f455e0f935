"""
Request coalescing for console and pipeline polling.

Dashboards poll the same build from many browser tabs at once. The poller
makes sure that, per key, at most one remote fetch is in flight and that
its result is reused for a short time afterwards.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Hashable
from typing import Any

from .cache import CacheKey, KeyedCache

logger = logging.getLogger(__name__)

DEFAULT_POLL_TTL = 3.0


class ConsolePoller:
    """
    Coalesces concurrent fetches of the same key.

    fetch(key, loader):
    - fresh cached result -> returned without calling loader
    - fetch in flight for key -> caller joins it
    - otherwise loader() runs once as a task shared by every caller

    coalesce(key, loader) shares the in-flight task the same way but never
    keeps the result, for callers that cache on their own.

    All joined callers receive the same outcome, success or exception.
    Failures are not cached. The shared task is shielded from caller
    cancellation, so a caller giving up never aborts the fetch for others
    and never leaves a second fetch running for the key.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_POLL_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self._results = KeyedCache(ttl=ttl, max_age=ttl, clock=clock)
        self._in_flight: dict[CacheKey, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def fetch(
        self, key: CacheKey, loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        cached = self._results.get_fresh(key)
        if cached is not None:
            return cached
        return await self._join(key, loader, remember=True)

    async def coalesce(
        self, key: CacheKey, loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Share one in-flight loader() per key without keeping its result."""
        return await self._join(key, loader, remember=False)

    async def _join(
        self, key: CacheKey, loader: Callable[[], Awaitable[Any]], remember: bool
    ) -> Any:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._run(key, loader, remember))
            task.add_done_callback(self._retrieve_outcome)
            self._in_flight[key] = task
        else:
            logger.debug(f"Joining in-flight fetch for {key}")

        return await asyncio.shield(task)

    async def _run(
        self, key: CacheKey, loader: Callable[[], Awaitable[Any]], remember: bool
    ) -> Any:
        task = asyncio.current_task()
        try:
            result = await loader()
            # An invalidation while in flight detaches the task; its result
            # is handed to the callers already waiting but not cached.
            if remember and self._in_flight.get(key) is task:
                self._results.set(key, result)
            return result
        finally:
            if self._in_flight.get(key) is task:
                del self._in_flight[key]

    @staticmethod
    def _retrieve_outcome(task: asyncio.Task) -> None:
        # Every caller may have gone away; mark the exception as retrieved.
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Shared fetch failed: {task.exception()!r}")

    def invalidate_prefix(self, *prefix: Hashable) -> int:
        size = len(prefix)
        for key in [k for k in self._in_flight if k[:size] == prefix]:
            del self._in_flight[key]
        return self._results.invalidate_prefix(*prefix)

    def evict_expired(self) -> int:
        return self._results.evict_expired()

    async def close(self) -> None:
        """Cancel fetches still in flight and drop cached results."""
        tasks = list(self._in_flight.values())
        self._in_flight.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._results.invalidate_where(lambda key: True)
