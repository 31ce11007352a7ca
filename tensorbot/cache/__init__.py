"""
Caching layer for expensive lookups.

- KeyedCache: In-memory time-boxed memoization with optional LRU bound
"""

from tensorbot.cache.keyed import CacheEntry, KeyedCache

__all__ = [
    "CacheEntry",
    "KeyedCache",
]
