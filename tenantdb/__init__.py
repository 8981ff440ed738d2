"""tenantdb: multi-tenant model materialization with two-tier caching.

Given a tenant id, tenantdb opens (and reuses) an isolated per-tenant
database connection, binds every registered schema on it and caches the
result in memory and Redis, so repeated requests skip the setup work.

Usage:
    from tenantdb import ModelRegistry

    async with ModelRegistry.from_settings() as registry:
        models = await registry.get_models("acme")
"""

from tenantdb.cache import MasterDataCache, MemoryCache, RedisTier, TieredCache
from tenantdb.connections import ConnectionManager, ConnectionState, TenantConnection
from tenantdb.core.exceptions import (
    CacheTierUnavailable,
    InvalidRegistration,
    InvalidTenantId,
    MaterializationError,
    ModelNotFound,
    RegistryClosedError,
    TenantConnectionError,
    TenantConnectionTimeout,
    TenantDBError,
)
from tenantdb.core.logging import TENANTDB_VERSION
from tenantdb.registry import (
    FieldSpec,
    FieldType,
    HealthStatus,
    IndexSpec,
    ModelHandle,
    ModelRegistry,
    SchemaDefinition,
    default_schemas,
    master_data_schema,
)

__version__ = TENANTDB_VERSION

__all__ = [
    "CacheTierUnavailable",
    "ConnectionManager",
    "ConnectionState",
    "FieldSpec",
    "FieldType",
    "HealthStatus",
    "IndexSpec",
    "InvalidRegistration",
    "InvalidTenantId",
    "MasterDataCache",
    "MaterializationError",
    "MemoryCache",
    "ModelHandle",
    "ModelNotFound",
    "ModelRegistry",
    "RedisTier",
    "RegistryClosedError",
    "SchemaDefinition",
    "TenantConnection",
    "TenantConnectionError",
    "TenantConnectionTimeout",
    "TenantDBError",
    "TieredCache",
    "__version__",
    "default_schemas",
    "master_data_schema",
]
