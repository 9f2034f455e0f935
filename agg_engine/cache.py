"""
Keyed in-memory cache with one asyncio.Lock per key.

Entries are kept after they go stale so reads can fall back to the last
known good value while a node is unreachable. Keys are tuples whose first
element is the node id, which makes per-node invalidation a prefix match.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

CacheKey = tuple[Hashable, ...]


@dataclass
class CacheEntry:
    value: Any
    stored_at: float  # time.monotonic()


class KeyedCache:
    """
    TTL cache whose entries survive expiry until evicted.

    - get() returns the entry regardless of age; is_fresh() tells the age.
    - lock(key) serializes refreshes of one key without blocking others.
    - ttl=None means entries never go stale (immutable values).
    """

    def __init__(
        self,
        ttl: float | None,
        max_age: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            ttl: Seconds an entry counts as fresh, or None for forever
            max_age: Seconds after which evict_expired() drops an entry.
                     Defaults to 10x ttl; None with ttl=None keeps entries
                     until invalidated.
            clock: Monotonic time source (injectable for tests)
        """
        self.ttl = ttl
        self.max_age = max_age if max_age is not None else (ttl * 10 if ttl else None)
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def lock(self, key: CacheKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def get(self, key: CacheKey) -> CacheEntry | None:
        return self._entries.get(key)

    def is_fresh(self, entry: CacheEntry) -> bool:
        if self.ttl is None:
            return True
        return self._clock() - entry.stored_at < self.ttl

    def get_fresh(self, key: CacheKey) -> Any | None:
        entry = self._entries.get(key)
        if entry is not None and self.is_fresh(entry):
            return entry.value
        return None

    def set(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def invalidate(self, key: CacheKey) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_where(self, predicate: Callable[[CacheKey], bool]) -> int:
        """Drop every entry whose key matches predicate; returns the count."""
        doomed = [key for key in self._entries if predicate(key)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def invalidate_prefix(self, *prefix: Hashable) -> int:
        size = len(prefix)
        return self.invalidate_where(lambda key: key[:size] == prefix)

    def evict_expired(self) -> int:
        """Drop entries older than max_age and locks nobody holds."""
        if self.max_age is None:
            return 0
        now = self._clock()
        evicted = self.invalidate_where(
            lambda key: now - self._entries[key].stored_at >= self.max_age
        )
        for key in [k for k, lock in self._locks.items() if k not in self._entries]:
            if not self._locks[key].locked():
                del self._locks[key]
        if evicted:
            logger.debug(f"Evicted {evicted} expired cache entries")
        return evicted
