"""Tenant model registry.

Key Components:
- ModelRegistry: schema catalogue and per-tenant model materialization
- SchemaDefinition: static description of a collection
- ModelHandle: a schema bound to one tenant connection
- master_data_schema: master-data schemas selected by collection name

Usage:
    registry = ModelRegistry.from_settings()
    await registry.start()

    models = await registry.get_models("acme")
    vendors = await registry.get_model("acme", "Vendor")

    await registry.shutdown()
"""

from tenantdb.registry.handles import ModelHandle, bind_schema
from tenantdb.registry.registry import HealthStatus, ModelRegistry, RegistryStats
from tenantdb.registry.schemas import (
    CachedModelSet,
    FieldSpec,
    FieldType,
    IndexSpec,
    MasterDataVariant,
    SchemaDefinition,
    collection_name_for,
    default_schemas,
    master_data_schema,
)

__all__ = [
    "CachedModelSet",
    "FieldSpec",
    "FieldType",
    "HealthStatus",
    "IndexSpec",
    "MasterDataVariant",
    "ModelHandle",
    "ModelRegistry",
    "RegistryStats",
    "SchemaDefinition",
    "bind_schema",
    "collection_name_for",
    "default_schemas",
    "master_data_schema",
]
