"""
In-memory keyed cache with per-entry expiry.

Used to memoize expensive lookups (collection stats, price conversions):
- Entries expire at an absolute instant (put time + ttl)
- Reading an expired entry is a miss; the next put overwrites it
- Optional LRU bound so long-running processes don't grow without limit
"""
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger()


@dataclass
class CacheEntry:
    """Cached payload and the monotonic instant it stops being valid."""
    value: Any
    expires_at: float


class KeyedCache:
    """Time-boxed memoization keyed by an opaque string."""

    def __init__(
        self,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            max_entries: Evict least recently used entries above this size
                         (None or 0 = unbounded)
            clock: Monotonic time source in seconds
        """
        self.max_entries = max_entries or None
        self.clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        """
        Return the cached value for key, or None on a miss.

        An entry whose expiry has passed counts as a miss.
        """
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= self.clock():
            self.misses += 1
            logger.debug("Cache miss", key=key, expired=entry is not None)
            return None

        self._entries.move_to_end(key)
        self.hits += 1
        logger.debug("Cache hit", key=key)
        return entry.value

    def put(self, key: str, value: Any, ttl: float) -> None:
        """Store value under key until now + ttl seconds, overwriting any entry."""
        self._entries[key] = CacheEntry(value=value, expires_at=self.clock() + ttl)
        self._entries.move_to_end(key)

        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Cache eviction", key=evicted, max_entries=self.max_entries)

    def invalidate(self, key: str) -> bool:
        """Drop a single entry. Returns True if it existed."""
        return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Remove every expired entry and return how many were dropped."""
        now = self.clock()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Purged expired cache entries", count=len(expired))
        return len(expired)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.expires_at > self.clock()

    def __len__(self) -> int:
        return len(self._entries)
