"""Two-tier cache: in-process memory in front of shared Redis.

Tier 1 always participates. Tier 2 is optional and best-effort: every tier-2
call produces a ``Tier2Outcome`` and failed outcomes are dropped in
``TieredCache._discard``, so callers never see tier-2 errors.

Keys passed to the cache are namespaced as ``{key_prefix}:{key}``.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from tenantdb.cache.memory import MemoryCache
from tenantdb.cache.redis_tier import RedisTier
from tenantdb.core.exceptions import CacheTierUnavailable

if TYPE_CHECKING:
    from tenantdb.core.settings import CacheSettings, RedisSettings

logger = logging.getLogger(__name__)

_HEALTH_PROBE_KEY = "__health__"


class CacheTier(StrEnum):
    """Tier that served a cache hit."""

    TIER1 = "tier1"
    TIER2 = "tier2"


@dataclass(frozen=True)
class Tier2Outcome:
    """Result of one tier-2 call: a value or the failure that replaced it."""

    operation: str
    key: str
    value: Any = None
    error: CacheTierUnavailable | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class TieredCacheStats:
    """Lookup counters across both tiers."""

    tier1_hits: int = 0
    tier2_hits: int = 0
    misses: int = 0
    tier2_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier1_hits": self.tier1_hits,
            "tier2_hits": self.tier2_hits,
            "misses": self.misses,
            "tier2_failures": self.tier2_failures,
        }


class TieredCache:
    """Memory + Redis cache.

    Example:
        >>> cache = TieredCache(MemoryCache(), RedisTier(), key_prefix="models")
        >>> await cache.start()
        >>> await cache.set("acme", {"User": {...}})
        >>> value, tier = await cache.lookup("acme")
    """

    def __init__(
        self,
        memory: MemoryCache[Any] | None = None,
        redis: RedisTier | None = None,
        *,
        key_prefix: str = "models",
    ) -> None:
        """Initialize the tiered cache.

        Args:
            memory: Tier-1 cache. A default one is created if omitted.
            redis: Tier-2 cache, or None to run on tier 1 only.
            key_prefix: Namespace of every key stored by this cache.
        """
        self._memory: MemoryCache[Any] = memory if memory is not None else MemoryCache()
        self._redis = redis
        self._key_prefix = key_prefix
        self._stats = TieredCacheStats()

    @classmethod
    def from_settings(
        cls, cache: "CacheSettings", redis: "RedisSettings"
    ) -> "TieredCache":
        """Build both tiers from the ``cache`` and ``redis`` settings groups."""
        memory: MemoryCache[Any] = MemoryCache(
            max_entries=cache.l1_max_entries,
            ttl_seconds=cache.l1_ttl,
            max_bytes=cache.l1_max_bytes,
        )
        tier2 = None
        if redis.enabled:
            tier2 = RedisTier(
                redis.url,
                password=redis.password.get_secret_value() if redis.password else None,
                default_ttl=cache.l2_ttl,
                connect_timeout=redis.connect_timeout,
                command_timeout=redis.command_timeout,
                retry_backoff_cap=redis.retry_backoff_cap,
            )
        return cls(memory, tier2, key_prefix=cache.key_prefix)

    @property
    def memory(self) -> MemoryCache[Any]:
        return self._memory

    @property
    def redis(self) -> RedisTier | None:
        return self._redis

    @property
    def key_prefix(self) -> str:
        return self._key_prefix

    @property
    def stats(self) -> TieredCacheStats:
        return self._stats

    def full_key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    async def start(self) -> bool:
        """Connect tier 2. Returns whether it is available; never raises."""
        if self._redis is None:
            logger.info("Tier-2 cache disabled, running on memory only")
            return False
        return await self._redis.connect()

    def is_tier2_available(self) -> bool:
        return self._redis is not None and self._redis.is_available

    async def _tier2(
        self,
        operation: str,
        key: str,
        call: Callable[[RedisTier], Awaitable[Any]],
    ) -> Tier2Outcome | None:
        """Run a tier-2 call. Returns None when tier 2 is disabled."""
        if self._redis is None:
            return None
        try:
            value = await call(self._redis)
        except CacheTierUnavailable as e:
            return Tier2Outcome(operation, key, error=e)
        return Tier2Outcome(operation, key, value=value)

    def _discard(self, outcome: Tier2Outcome) -> None:
        """Drop a failed tier-2 outcome."""
        self._stats.tier2_failures += 1
        if outcome.error is not None and outcome.error.__cause__ is not None:
            logger.warning(
                "Tier-2 %s failed for %s: %s",
                outcome.operation,
                outcome.key,
                outcome.error,
            )
        else:
            logger.debug("Tier-2 %s skipped for %s", outcome.operation, outcome.key)

    async def lookup(self, key: str) -> tuple[Any | None, CacheTier | None]:
        """Look a key up in both tiers.

        Returns:
            ``(value, tier)`` on a hit, ``(None, None)`` on a miss.
        """
        full_key = self.full_key(key)

        value = self._memory.get(full_key)
        if value is not None:
            self._stats.tier1_hits += 1
            logger.debug("Tier-1 cache hit: %s", full_key)
            return value, CacheTier.TIER1

        outcome = await self._tier2("get", full_key, lambda r: r.get(full_key))
        if outcome is not None:
            if not outcome.ok:
                self._discard(outcome)
            elif outcome.value is not None:
                self._memory.set(full_key, outcome.value)
                self._stats.tier2_hits += 1
                logger.debug("Tier-2 cache hit: %s", full_key)
                return outcome.value, CacheTier.TIER2

        self._stats.misses += 1
        logger.debug("Cache miss: %s", full_key)
        return None, None

    async def get(self, key: str) -> Any | None:
        """Get a value from the nearest tier holding it."""
        value, _ = await self.lookup(key)
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store a value in tier 1 and, when available, tier 2.

        Args:
            key: Cache key (without namespace prefix).
            value: JSON-serializable value.
            ttl: Tier-2 TTL in seconds; tier 2's default when None.
        """
        full_key = self.full_key(key)
        self._memory.set(full_key, value)

        outcome = await self._tier2(
            "set", full_key, lambda r: r.set(full_key, value, ttl=ttl)
        )
        if outcome is not None and not outcome.ok:
            self._discard(outcome)

    async def delete(self, key: str) -> None:
        """Remove a key from both tiers."""
        full_key = self.full_key(key)
        self._memory.delete(full_key)

        outcome = await self._tier2("delete", full_key, lambda r: r.delete(full_key))
        if outcome is not None and not outcome.ok:
            self._discard(outcome)

    async def clear(self) -> None:
        """Remove every key of this cache's namespace from both tiers."""
        pattern = self.full_key("*")
        removed = self._memory.delete_prefix(self.full_key(""))

        outcome = await self._tier2(
            "clear", pattern, lambda r: r.delete_pattern(pattern)
        )
        if outcome is not None and not outcome.ok:
            self._discard(outcome)
        logger.info("Cleared cache namespace %s (%d tier-1 entries)", pattern, removed)

    async def check_tier2(self) -> bool:
        """Ping tier 2, reconnecting when its backoff allows."""
        outcome = await self._tier2("ping", _HEALTH_PROBE_KEY, lambda r: r.ping())
        if outcome is None:
            return False
        if not outcome.ok:
            self._discard(outcome)
            return False
        return bool(outcome.value)

    def check_tier1(self) -> bool:
        """Write, read back and delete a probe entry in tier 1."""
        probe_key = self.full_key(_HEALTH_PROBE_KEY)
        token = {"ok": True}
        try:
            self._memory.set(probe_key, token, ttl=10)
            return self._memory.get(probe_key) == token
        finally:
            self._memory.delete(probe_key)

    async def get_stats(self) -> dict[str, Any]:
        """Statistics of both tiers.

        Returns:
            ``{"tier1": {...}, "tier2": {...}, "lookups": {...}}``
        """
        tier2: dict[str, Any] = {
            "enabled": self._redis is not None,
            "connected": self.is_tier2_available(),
            "key_count": None,
        }
        if self._redis is not None:
            tier2.update(self._redis.get_stats())
            pattern = self.full_key("*")
            outcome = await self._tier2(
                "count", pattern, lambda r: r.count_keys(pattern)
            )
            if outcome is not None:
                if outcome.ok:
                    tier2["key_count"] = outcome.value
                else:
                    self._discard(outcome)
            tier2["connected"] = self.is_tier2_available()

        return {
            "tier1": self._memory.get_stats().to_dict(),
            "tier2": tier2,
            "lookups": self._stats.to_dict(),
        }

    async def close(self) -> None:
        """Close tier 2 and drop tier-1 entries."""
        self._memory.clear()
        if self._redis is not None:
            await self._redis.close()
