"""Model metadata caching.

Key Components:
- MemoryCache: tier-1 in-process LRU cache with TTL and a byte budget
- RedisTier: tier-2 shared cache with a connectivity state machine
- TieredCache: both tiers behind one best-effort interface
- MasterDataCache: tier-2 cache for master-data collection reads
"""

from tenantdb.cache.master_data import MasterDataCache, query_key
from tenantdb.cache.memory import MemoryCache, MemoryCacheStats
from tenantdb.cache.redis_tier import RedisTier, Tier2State
from tenantdb.cache.tiered import CacheTier, TieredCache, Tier2Outcome

__all__ = [
    "CacheTier",
    "MasterDataCache",
    "MemoryCache",
    "MemoryCacheStats",
    "RedisTier",
    "Tier2Outcome",
    "Tier2State",
    "TieredCache",
    "query_key",
]
