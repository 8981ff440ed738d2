"""Master-data read cache.

Caches master-data collection reads in tier 2 only, under keys of the form
``{prefix}:{tenant_id}:{collection}[:{identifier}]``. Every operation is
best-effort: when Redis is unavailable reads miss and writes are skipped.
"""

import json
import logging
from collections import Counter
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from tenantdb.cache.redis_tier import RedisTier
from tenantdb.core.exceptions import CacheTierUnavailable

if TYPE_CHECKING:
    from tenantdb.core.settings import CacheSettings

logger = logging.getLogger(__name__)


def query_key(
    query: Mapping[str, Any] | None = None,
    sort: Mapping[str, Any] | None = None,
    skip: int = 0,
    limit: int | None = None,
) -> str:
    """Canonical identifier of a collection query.

    Compact JSON with sorted keys, so equal queries always map to the same
    identifier whatever the order their filters were given in.

    Example:
        >>> query_key({"is_active": True, "category": "pumps"}, limit=20)
        '{"limit":20,"query":{"category":"pumps","is_active":true},"skip":0,"sort":{}}'
    """
    return json.dumps(
        {
            "query": dict(query or {}),
            "sort": dict(sort or {}),
            "skip": skip,
            "limit": limit,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


class MasterDataCache:
    """Tier-2 cache for master-data collections."""

    def __init__(
        self,
        redis: RedisTier | None,
        *,
        prefix: str = "master",
        ttl: int = 3600,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._ttl = ttl

    @classmethod
    def from_settings(
        cls, redis: RedisTier | None, settings: "CacheSettings"
    ) -> "MasterDataCache":
        return cls(redis, prefix=settings.master_prefix, ttl=settings.master_ttl)

    def make_key(
        self, tenant_id: str, collection: str, identifier: str | None = None
    ) -> str:
        base = f"{self._prefix}:{tenant_id}:{collection}"
        return f"{base}:{identifier}" if identifier else base

    def is_available(self) -> bool:
        return self._redis is not None and self._redis.is_available

    async def get(
        self, tenant_id: str, collection: str, identifier: str | None = None
    ) -> Any | None:
        """Cached value, or None on a miss or when Redis is unavailable."""
        if self._redis is None:
            return None
        key = self.make_key(tenant_id, collection, identifier)
        try:
            value = await self._redis.get(key)
        except CacheTierUnavailable as e:
            logger.debug("Master data cache get skipped for %s: %s", key, e)
            return None
        if value is not None:
            logger.debug("Master data cache hit: %s", key)
        return value

    async def set(
        self,
        tenant_id: str,
        collection: str,
        data: Any,
        identifier: str | None = None,
        ttl: int | None = None,
    ) -> bool:
        """Store a value. Returns False when it could not be written."""
        if self._redis is None:
            return False
        key = self.make_key(tenant_id, collection, identifier)
        try:
            await self._redis.set(key, data, ttl=ttl or self._ttl)
        except CacheTierUnavailable as e:
            logger.debug("Master data cache set skipped for %s: %s", key, e)
            return False
        return True

    async def delete(
        self, tenant_id: str, collection: str, identifier: str | None = None
    ) -> bool:
        if self._redis is None:
            return False
        key = self.make_key(tenant_id, collection, identifier)
        try:
            await self._redis.delete(key)
        except CacheTierUnavailable as e:
            logger.debug("Master data cache delete skipped for %s: %s", key, e)
            return False
        return True

    async def invalidate_collection(self, tenant_id: str, collection: str) -> int:
        """Drop every cached read of a collection. Returns the keys removed."""
        if self._redis is None:
            return 0
        base = self.make_key(tenant_id, collection)
        try:
            deleted = await self._redis.delete(base)
            deleted += await self._redis.delete_pattern(f"{base}:*")
        except CacheTierUnavailable as e:
            logger.warning("Master data cache invalidation failed for %s: %s", base, e)
            return 0
        if deleted:
            logger.info(
                "Invalidated %d master data cache keys for %s", deleted, collection
            )
        return deleted

    async def get_stats(self, tenant_id: str = "*") -> dict[str, Any]:
        """Key counts grouped by collection."""
        if self._redis is None:
            return {"connected": False, "total_keys": 0, "collections": {}}
        try:
            keys = await self._redis.scan_keys(f"{self._prefix}:{tenant_id}:*")
        except CacheTierUnavailable as e:
            return {
                "connected": False,
                "total_keys": 0,
                "collections": {},
                "error": str(e),
            }

        position = self._prefix.count(":") + 2
        collections = Counter(
            parts[position]
            for parts in (key.split(":") for key in keys)
            if len(parts) > position
        )
        return {
            "connected": True,
            "total_keys": len(keys),
            "collections": dict(collections),
        }
