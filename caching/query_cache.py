"""
In-memory TTL + LRU cache for backend query results.

Entries are keyed by a normalized query signature and optionally tagged (usually
with the table name) so writes can invalidate every dependent read at once.
The cache is best-effort: internal failures degrade to a miss, never an error.
"""
import json
import logging
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field, is_dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

logger = logging.getLogger(__name__)


class CacheMiss:
    """Sentinel type returned by QueryCache.get when nothing usable is cached."""

    _instance: Optional["CacheMiss"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "CACHE_MISS"


CACHE_MISS = CacheMiss()


@dataclass
class CacheEntry:
    """Cache entry with metadata. Replaced as a whole, never mutated in place."""
    key: str
    value: Any
    inserted_at: float
    ttl_ms: int
    size_bytes: int = 0
    tags: FrozenSet[str] = field(default_factory=frozenset)

    def expires_at(self) -> float:
        return self.inserted_at + self.ttl_ms / 1000

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at()


class QueryCache:
    """TTL + LRU cache with tag invalidation and a periodic expiry sweep."""

    def __init__(
        self,
        default_ttl_ms: int = 300_000,
        max_entries: int = 1000,
        max_bytes: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl_ms = default_ttl_ms
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._clock = clock

        # Iteration order is recency order: first item is least recently used.
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._total_bytes = 0

        self.metrics = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "evictions": 0,
            "expirations": 0,
            "invalidations": 0,
            "errors": 0,
        }

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.monotonic) -> "QueryCache":
        return cls(
            default_ttl_ms=settings.default_ttl_ms,
            max_entries=settings.max_cache_entries,
            max_bytes=settings.max_cache_bytes,
            clock=clock,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not CACHE_MISS

    def get(self, key: str) -> Any:
        """Return the cached value, or CACHE_MISS when absent or expired."""
        try:
            entry = self._entries.get(key)
            if entry is None:
                self.metrics["misses"] += 1
                return CACHE_MISS

            if entry.is_expired(self._clock()):
                self._remove(key)
                self.metrics["expirations"] += 1
                self.metrics["misses"] += 1
                return CACHE_MISS

            self._entries.move_to_end(key)
            self.metrics["hits"] += 1
            return entry.value
        except Exception as e:
            self.metrics["errors"] += 1
            logger.warning(f"⚠️ [QUERY-CACHE] get failed for {key[:64]}, treating as miss: {e}")
            return CACHE_MISS

    def set(
        self,
        key: str,
        value: Any,
        ttl_ms: Optional[int] = None,
        tags: Iterable[str] = (),
    ) -> bool:
        """Store a value, evicting least recently used entries past capacity.

        Returns False when the value was not stored (oversized or internal error).
        """
        try:
            ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
            if ttl <= 0:
                return False

            size = self._estimate_size(value)
            if self.max_bytes is not None and size > self.max_bytes:
                logger.warning(f"⚠️ [QUERY-CACHE] Entry too large ({size} bytes) for {key[:64]}")
                return False

            if key in self._entries:
                self._remove(key)

            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                inserted_at=self._clock(),
                ttl_ms=ttl,
                size_bytes=size,
                tags=frozenset(tags),
            )
            self._total_bytes += size
            self.metrics["sets"] += 1

            self._enforce_capacity()
            return True
        except Exception as e:
            self.metrics["errors"] += 1
            logger.warning(f"⚠️ [QUERY-CACHE] set failed for {key[:64]}, value not cached: {e}")
            return False

    def invalidate(self, tag_or_key: str) -> int:
        """Drop the entry with this exact key and every entry carrying this tag."""
        try:
            doomed = [
                key for key, entry in list(self._entries.items())
                if key == tag_or_key or tag_or_key in entry.tags
            ]
            for key in doomed:
                self._remove(key)
            self.metrics["invalidations"] += len(doomed)
            if doomed:
                logger.debug(f"🧹 [QUERY-CACHE] Invalidated {len(doomed)} entries for '{tag_or_key}'")
            return len(doomed)
        except Exception as e:
            self.metrics["errors"] += 1
            logger.warning(f"⚠️ [QUERY-CACHE] invalidate failed for '{tag_or_key}': {e}")
            return 0

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with `prefix`."""
        try:
            doomed = [key for key in list(self._entries) if key.startswith(prefix)]
            for key in doomed:
                self._remove(key)
            self.metrics["invalidations"] += len(doomed)
            return len(doomed)
        except Exception as e:
            self.metrics["errors"] += 1
            logger.warning(f"⚠️ [QUERY-CACHE] invalidate_prefix failed for '{prefix}': {e}")
            return 0

    def sweep(self) -> int:
        """Remove expired entries. Runs periodically from the scheduler."""
        try:
            now = self._clock()
            expired = [key for key, entry in list(self._entries.items()) if entry.is_expired(now)]
            for key in expired:
                self._remove(key)
        except Exception as e:
            self.metrics["errors"] += 1
            logger.warning(f"⚠️ [QUERY-CACHE] sweep failed, expired entries kept until next run: {e}")
            return 0
        self.metrics["expirations"] += len(expired)
        if expired:
            logger.debug(f"🧹 [QUERY-CACHE] Swept {len(expired)} expired entries")
        return len(expired)

    async def sweep_async(self) -> int:
        return self.sweep()

    def clear(self) -> None:
        self._entries.clear()
        self._total_bytes = 0

    def keys(self) -> list:
        """Keys in recency order, least recently used first."""
        return list(self._entries)

    def stats(self) -> Dict[str, Any]:
        lookups = self.metrics["hits"] + self.metrics["misses"]
        return {
            **self.metrics,
            "entries": len(self._entries),
            "max_entries": self.max_entries,
            "total_bytes": self._total_bytes,
            "max_bytes": self.max_bytes,
            "hit_rate": round(self.metrics["hits"] / lookups, 4) if lookups else 0.0,
        }

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._total_bytes -= entry.size_bytes

    def _enforce_capacity(self) -> None:
        # Keep the newest entry even if it alone exceeds max_bytes.
        while len(self._entries) > 1 and (
            len(self._entries) > self.max_entries
            or (self.max_bytes is not None and self._total_bytes > self.max_bytes)
        ):
            lru_key = next(iter(self._entries))
            self._remove(lru_key)
            self.metrics["evictions"] += 1
            logger.debug(f"♻️ [QUERY-CACHE] Evicted LRU entry {lru_key[:64]}")

    @staticmethod
    def _estimate_size(value: Any) -> int:
        """Estimate serialized size in bytes."""
        if is_dataclass(value) and not isinstance(value, type):
            value = asdict(value)
        return len(json.dumps(value, default=str).encode("utf-8"))
