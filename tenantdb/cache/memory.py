"""In-process tier-1 cache.

LRU cache bounded by entry count and by the aggregate serialized size of its
values, with a per-entry TTL. Reads refresh both recency and the TTL.
"""

import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


def serialized_size(value: Any) -> int:
    """Approximate size of a value as the length of its compact JSON form."""
    return len(json.dumps(value, separators=(",", ":"), default=str))


@dataclass
class MemoryCacheEntry[T]:
    """Entry in the memory cache with metadata."""

    value: T
    size_bytes: int
    expires_at: float
    access_count: int = 1

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.monotonic()) >= self.expires_at


@dataclass
class MemoryCacheStats:
    """Statistics for the memory cache."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    rejected: int = 0
    size: int = 0
    max_size: int = 0
    approx_bytes: int = 0
    max_bytes: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "size": self.size,
            "max_size": self.max_size,
            "approx_bytes": self.approx_bytes,
            "max_bytes": self.max_bytes,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "rejected": self.rejected,
            "hit_rate": self.hit_rate,
        }


class MemoryCache[T]:
    """Thread-safe LRU cache with TTL and a byte budget.

    Type Parameters:
        T: The type of values stored in the cache. Values must be JSON
            serializable (non-JSON leaves are sized through ``str()``).

    Example:
        >>> cache = MemoryCache[dict](max_entries=500, ttl_seconds=300)
        >>> cache.set("models:acme", {"User": {...}})
        >>> cache.get("models:acme")
    """

    def __init__(
        self,
        max_entries: int = 500,
        ttl_seconds: float = 300.0,
        max_bytes: int = 100 * 1024 * 1024,
        refresh_ttl_on_get: bool = True,
    ) -> None:
        """Initialize the memory cache.

        Args:
            max_entries: Maximum number of entries.
            ttl_seconds: Default time-to-live of an entry.
            max_bytes: Maximum aggregate serialized size of all values.
            refresh_ttl_on_get: Restart an entry's TTL whenever it is read.
        """
        self._entries: OrderedDict[str, MemoryCacheEntry[T]] = OrderedDict()
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._max_bytes = max_bytes
        self._refresh_ttl_on_get = refresh_ttl_on_get
        self._total_bytes = 0
        self._stats = MemoryCacheStats(max_size=max_entries, max_bytes=max_bytes)
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            entry = self._entries.get(key) if isinstance(key, str) else None
            return entry is not None and not entry.is_expired()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def get(self, key: str) -> T | None:
        """Get a value, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None

            now = time.monotonic()
            if entry.is_expired(now):
                self._remove(key)
                self._stats.misses += 1
                self._stats.expirations += 1
                logger.debug("Memory cache entry expired: %s", key)
                return None

            self._entries.move_to_end(key)
            entry.access_count += 1
            if self._refresh_ttl_on_get:
                entry.expires_at = now + self._ttl
            self._stats.hits += 1
            return entry.value

    def set(self, key: str, value: T, ttl: float | None = None) -> bool:
        """Store a value.

        Values whose serialized size alone exceeds the byte budget are not
        stored (any previous value under the key is dropped).

        Returns:
            True if the value was stored.
        """
        size = serialized_size(value)
        with self._lock:
            if key in self._entries:
                self._remove(key)

            if size > self._max_bytes:
                self._stats.rejected += 1
                logger.warning(
                    "Value for %s (%d bytes) exceeds memory cache budget (%d bytes)",
                    key,
                    size,
                    self._max_bytes,
                )
                return False

            self._entries[key] = MemoryCacheEntry(
                value=value,
                size_bytes=size,
                expires_at=time.monotonic() + (ttl if ttl is not None else self._ttl),
            )
            self._total_bytes += size
            self._evict_over_limits()
            self._sync_stats()
            return True

    def delete(self, key: str) -> bool:
        """Remove an entry. Returns True if it existed."""
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            self._sync_stats()
            return True

    def delete_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with ``prefix``."""
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for key in keys:
                self._remove(key)
            self._sync_stats()
            return len(keys)

    def clear(self) -> int:
        """Remove all entries. Returns the number removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._total_bytes = 0
            self._sync_stats()
            return count

    def keys(self) -> list[str]:
        """Keys of live entries, least recently used first."""
        with self._lock:
            now = time.monotonic()
            return [k for k, e in self._entries.items() if not e.is_expired(now)]

    def purge_expired(self) -> int:
        """Drop expired entries. Returns the number dropped."""
        with self._lock:
            now = time.monotonic()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._remove(key)
            self._stats.expirations += len(expired)
            self._sync_stats()
            return len(expired)

    def get_stats(self) -> MemoryCacheStats:
        """Get cache statistics."""
        with self._lock:
            self._sync_stats()
            return self._stats

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._total_bytes -= entry.size_bytes

    def _evict_over_limits(self) -> None:
        while self._entries and (
            len(self._entries) > self._max_entries
            or self._total_bytes > self._max_bytes
        ):
            lru_key = next(iter(self._entries))
            self._remove(lru_key)
            self._stats.evictions += 1
            logger.debug("Evicted memory cache entry: %s", lru_key)

    def _sync_stats(self) -> None:
        self._stats.size = len(self._entries)
        self._stats.approx_bytes = self._total_bytes
