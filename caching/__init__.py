"""
In-memory query caching for the data layer.
TTL plus LRU eviction with tag-based invalidation.
"""

from .query_cache import (
    CACHE_MISS,
    CacheEntry,
    CacheMiss,
    QueryCache,
)

__all__ = [
    'CACHE_MISS',
    'CacheEntry',
    'CacheMiss',
    'QueryCache',
]
