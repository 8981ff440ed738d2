"""Distributed model registry.

Turns a tenant id into ready-to-use model handles. Materializing a tenant
(opening its connection and binding every registered schema) is expensive,
so its result is cached as metadata in a ``TieredCache`` and concurrent cold
requests for the same tenant share a single materialization.

Usage:
    async with ModelRegistry.from_settings() as registry:
        models = await registry.get_models("acme")
        user = await models["User"].find_one(email="ops@acme.test")
"""

import asyncio
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from functools import partial
from typing import TYPE_CHECKING, Any, Self

from pydantic import ValidationError

from tenantdb.cache.master_data import MasterDataCache
from tenantdb.cache.tiered import CacheTier, TieredCache
from tenantdb.connections.connection import ConnectionState
from tenantdb.connections.manager import ConnectionManager, validate_tenant_id
from tenantdb.core.exceptions import (
    InvalidRegistration,
    MaterializationError,
    ModelNotFound,
    RegistryClosedError,
)
from tenantdb.core.logging import bind_context
from tenantdb.registry.handles import ModelHandle, bind_schema
from tenantdb.registry.schemas import (
    CachedModel,
    CachedModelSet,
    SchemaDefinition,
    collection_name_for,
    default_schemas,
    master_data_schema,
)

if TYPE_CHECKING:
    from tenantdb.core.settings import TenantDBSettings

logger = logging.getLogger(__name__)

MODEL_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")

Models = dict[str, ModelHandle]


class HealthStatus(StrEnum):
    """Overall registry health."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class RegistryStats:
    """Registry counters.

    Every ``get_models`` call counts exactly one of ``tier1_hits``,
    ``tier2_hits`` or ``misses``.
    """

    tier1_hits: int = 0
    tier2_hits: int = 0
    misses: int = 0
    cold_materializations: int = 0
    errors: int = 0
    active_locks: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate hit rate."""
        total = self.tier1_hits + self.tier2_hits + self.misses
        return (self.tier1_hits + self.tier2_hits) / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "tier1_hits": self.tier1_hits,
            "tier2_hits": self.tier2_hits,
            "misses": self.misses,
            "cold_materializations": self.cold_materializations,
            "errors": self.errors,
            "active_locks": self.active_locks,
            "hit_rate": self.hit_rate,
        }


class ModelRegistry:
    """Per-tenant model materialization with two-tier caching.

    The registry owns its ConnectionManager and TieredCache: ``start()``
    connects the cache and starts the idle sweep, ``shutdown()`` closes both.
    After shutdown every operation raises ``RegistryClosedError``.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        cache: TieredCache,
        *,
        schemas: Mapping[str, SchemaDefinition] | None = None,
        master_data: MasterDataCache | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            connections: Tenant connection manager.
            cache: Model metadata cache.
            schemas: Initial schema catalogue; ``default_schemas()`` if None.
            master_data: Optional master-data read cache exposed to callers.
        """
        self._connections = connections
        self._cache = cache
        self._master_data = master_data
        self._schemas: dict[str, SchemaDefinition] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight: dict[str, asyncio.Task[tuple[Models, CacheTier | None]]] = {}
        self._stats = RegistryStats()
        self._closed = False

        self._connections.idle_listener = self._on_idle_connections_closed
        self.register_schemas(default_schemas() if schemas is None else schemas)

    @classmethod
    def from_settings(
        cls,
        settings: "TenantDBSettings | None" = None,
        *,
        schemas: Mapping[str, SchemaDefinition] | None = None,
    ) -> "ModelRegistry":
        """Build a registry and its components from configuration."""
        if settings is None:
            from tenantdb.core.settings import get_cached_settings

            settings = get_cached_settings()

        cache = TieredCache.from_settings(settings.cache, settings.redis)
        return cls(
            ConnectionManager.from_settings(settings.storage),
            cache,
            schemas=schemas,
            master_data=MasterDataCache.from_settings(cache.redis, settings.cache),
        )

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.shutdown()

    @property
    def connections(self) -> ConnectionManager:
        return self._connections

    @property
    def cache(self) -> TieredCache:
        return self._cache

    @property
    def master_data(self) -> MasterDataCache | None:
        return self._master_data

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise RegistryClosedError("Model registry has been shut down")

    async def start(self) -> None:
        """Connect the cache and start the idle sweep.

        An unreachable tier 2 only degrades the registry.
        """
        self._ensure_open()
        if not await self._cache.start() and self._cache.redis is not None:
            logger.warning("Tier-2 cache unavailable, continuing with memory only")
        self._connections.start()
        logger.info("Model registry started with %d schemas", len(self._schemas))

    # =========================================================================
    # Schema catalogue
    # =========================================================================

    def register_schema(self, name: str, schema: SchemaDefinition) -> None:
        """Register (or replace) the schema of a logical model.

        Raises:
            InvalidRegistration: If the name or schema is invalid.
        """
        self._ensure_open()
        if not isinstance(name, str) or not name:
            raise InvalidRegistration("Model name is required")
        if not MODEL_NAME_PATTERN.match(name):
            raise InvalidRegistration(
                f"Invalid model name {name!r}: must start with a letter and "
                "contain only letters, digits and underscores"
            )
        if not isinstance(schema, SchemaDefinition):
            raise InvalidRegistration(
                f"Schema for {name} must be a SchemaDefinition, "
                f"got {type(schema).__name__}"
            )
        if not schema.fields:
            raise InvalidRegistration(f"Schema for {name} has no fields")

        self._schemas[name] = schema
        logger.info("Schema registered: %s", name)

    def register_schemas(self, schemas: Mapping[str, SchemaDefinition]) -> None:
        for name, schema in schemas.items():
            self.register_schema(name, schema)

    async def unregister_schema(self, name: str) -> bool:
        """Remove a schema. Invalidates every cached tenant when removed.

        Returns:
            True if a schema was removed.
        """
        self._ensure_open()
        if self._schemas.pop(name, None) is None:
            return False

        logger.info("Schema unregistered: %s", name)
        await self.invalidate_all_cache()
        return True

    def registered_schemas(self) -> list[str]:
        return sorted(self._schemas)

    def is_schema_registered(self, name: str) -> bool:
        return name in self._schemas

    def get_schema(self, name: str) -> SchemaDefinition | None:
        return self._schemas.get(name)

    # =========================================================================
    # Materialization
    # =========================================================================

    def get_lock(self, tenant_id: str) -> asyncio.Lock:
        """The tenant's materialization lock, created on first use."""
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    async def get_models(self, tenant_id: str) -> Models:
        """Handles of every registered model for a tenant.

        Raises:
            InvalidTenantId: If the tenant id is malformed.
            TenantConnectionError: If the tenant connection cannot be opened.
            MaterializationError: If binding a schema failed.
            RegistryClosedError: After shutdown.
        """
        self._ensure_open()
        validate_tenant_id(tenant_id)

        with bind_context(tenant_id=tenant_id):
            try:
                models, tier = await self._from_cache(tenant_id)
                if models is None:
                    # shielded: a cancelled caller must not abort the shared load
                    models, tier = await asyncio.shield(self._load_task(tenant_id))
            except asyncio.CancelledError:
                # the shared load was cancelled by shutdown, not this caller
                task = asyncio.current_task()
                if self._closed and task is not None and not task.cancelling():
                    raise RegistryClosedError(
                        "Model registry has been shut down"
                    ) from None
                raise
            except Exception as e:
                self._stats.errors += 1
                logger.error("Error getting models for tenant %s: %s", tenant_id, e)
                raise

        if tier is CacheTier.TIER1:
            self._stats.tier1_hits += 1
        elif tier is CacheTier.TIER2:
            self._stats.tier2_hits += 1
        else:
            self._stats.misses += 1
        return dict(models)

    async def get_model(self, tenant_id: str, model_name: str) -> ModelHandle:
        """Handle of one model for a tenant.

        Unknown names are registered on the fly with the master-data schema of
        the collection derived from the name.

        Raises:
            ModelNotFound: If the model is still unavailable afterwards.
        """
        self._ensure_open()
        validate_tenant_id(tenant_id)

        if model_name not in self._schemas:
            try:
                schema = master_data_schema(collection_name_for(model_name))
                self.register_schema(model_name, schema)
            except (InvalidRegistration, ValidationError) as e:
                raise ModelNotFound(tenant_id, model_name) from e

        models = await self.get_models(tenant_id)
        if model_name not in models and model_name in self._schemas:
            # cached before this schema was registered
            await self.invalidate_cache(tenant_id)
            models = await self.get_models(tenant_id)

        handle = models.get(model_name)
        if handle is None:
            raise ModelNotFound(tenant_id, model_name)
        return handle

    async def _from_cache(
        self, tenant_id: str
    ) -> tuple[Models | None, CacheTier | None]:
        value, tier = await self._cache.lookup(tenant_id)
        if value is None:
            return None, None

        try:
            cached = CachedModelSet.from_cache(value)
        except ValidationError as e:
            logger.warning("Discarding malformed cache entry for %s: %s", tenant_id, e)
            await self._cache.delete(tenant_id)
            return None, None

        schemas: dict[str, SchemaDefinition] = {}
        for name, cached_model in cached.models.items():
            schema = self._schemas.get(name)
            if schema is None:
                continue
            if schema.collection != cached_model.collection_name:
                logger.info(
                    "Schema %s moved from %s to %s, discarding cache entry for %s",
                    name,
                    cached_model.collection_name,
                    schema.collection,
                    tenant_id,
                )
                await self._cache.delete(tenant_id)
                return None, None
            schemas[name] = schema

        connection = await self._connections.get_connection(tenant_id)
        models: Models = {}
        for name, schema in schemas.items():
            models[name] = await bind_schema(connection, name, schema, create=False)
        return models, tier

    def _load_task(
        self, tenant_id: str
    ) -> asyncio.Task[tuple[Models, CacheTier | None]]:
        task = self._inflight.get(tenant_id)
        if task is None:
            task = asyncio.create_task(
                self._load(tenant_id), name=f"tenantdb-materialize-{tenant_id}"
            )
            self._inflight[tenant_id] = task
            task.add_done_callback(partial(self._load_done, tenant_id))
        return task

    def _load_done(
        self, tenant_id: str, task: asyncio.Task[tuple[Models, CacheTier | None]]
    ) -> None:
        if self._inflight.get(tenant_id) is task:
            del self._inflight[tenant_id]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(
                "Materialization for tenant %s failed: %s", tenant_id, task.exception()
            )

    async def _load(self, tenant_id: str) -> tuple[Models, CacheTier | None]:
        async with self.get_lock(tenant_id):
            models, tier = await self._from_cache(tenant_id)
            if models is not None:
                return models, tier
            return await self._materialize(tenant_id), None

    async def _materialize(self, tenant_id: str) -> Models:
        logger.info("Creating models for tenant: %s", tenant_id)
        connection = await self._connections.get_connection(tenant_id)

        models: Models = {}
        for name, schema in list(self._schemas.items()):
            try:
                models[name] = await bind_schema(connection, name, schema, create=True)
            except Exception as e:
                raise MaterializationError(tenant_id, name, e) from e

        self._stats.cold_materializations += 1
        entry = CachedModelSet(
            tenant_id=tenant_id,
            models={
                name: CachedModel(name=name, collection_name=handle.collection_name)
                for name, handle in models.items()
            },
        )
        await self._cache.set(tenant_id, entry.to_cache())
        logger.info("Materialized %d models for tenant %s", len(models), tenant_id)

        # a schema may have been unregistered while binding
        return {name: h for name, h in models.items() if name in self._schemas}

    # =========================================================================
    # Invalidation and connections
    # =========================================================================

    async def invalidate_cache(self, tenant_id: str) -> None:
        """Drop a tenant's cached model metadata from both tiers."""
        self._ensure_open()
        validate_tenant_id(tenant_id)
        await self._cache.delete(tenant_id)
        logger.info("Cache invalidated for tenant: %s", tenant_id)

    async def invalidate_all_cache(self) -> None:
        """Drop every tenant's cached model metadata."""
        self._ensure_open()
        await self._cache.clear()
        logger.info("All model cache invalidated")

    async def close_tenant_connection(self, tenant_id: str) -> None:
        """Close a tenant's connection and invalidate its cache."""
        self._ensure_open()
        validate_tenant_id(tenant_id)
        await self._connections.close_connection(tenant_id)
        await self.invalidate_cache(tenant_id)

    def _on_idle_connections_closed(self, tenant_ids: Sequence[str]) -> None:
        for tenant_id in tenant_ids:
            lock = self._locks.get(tenant_id)
            if lock is None or lock.locked() or tenant_id in self._inflight:
                continue
            del self._locks[tenant_id]
        logger.debug("Released locks of idle tenants: %s", ", ".join(tenant_ids))

    # =========================================================================
    # Observability and lifecycle
    # =========================================================================

    def get_registry_stats(self) -> RegistryStats:
        self._stats.active_locks = len(self._locks)
        return self._stats

    async def get_stats(self) -> dict[str, Any]:
        """Registry, cache and connection statistics."""
        self._ensure_open()
        return {
            "registry": {
                **self.get_registry_stats().to_dict(),
                "registered_schemas": len(self._schemas),
                "schemas": self.registered_schemas(),
            },
            "cache": await self._cache.get_stats(),
            "connections": self._connections.get_stats(),
        }

    async def health_check(self) -> dict[str, Any]:
        """Health of the cache tiers and the connection subsystem.

        Returns:
            ``{"status": "healthy" | "degraded" | "unhealthy", "checks": {...}}``;
            unhealthy results carry an ``error``.
        """
        self._ensure_open()
        cache_check: dict[str, Any] = {"tier1": False, "tier2": False}
        connections_check: dict[str, Any] = {
            "healthy": False,
            "total": 0,
            "errored": [],
        }
        checks = {"cache": cache_check, "connections": connections_check}
        result: dict[str, Any] = {"checks": checks}

        current = cache_check
        try:
            tier1_ok = cache_check["tier1"] = self._cache.check_tier1()
            tier2_ok = cache_check["tier2"] = await self._cache.check_tier2()
            current = connections_check
            connection_stats = self._connections.get_stats()
        except Exception as e:
            logger.error("Health check failed: %s", e)
            current["error"] = str(e)
            result["status"] = HealthStatus.UNHEALTHY.value
            result["error"] = str(e)
            return result

        connections_check["healthy"] = True
        connections_check["total"] = connection_stats["total_connections"]
        connections_check["errored"] = [
            c["tenant_id"]
            for c in connection_stats["connections"]
            if c["state"] == ConnectionState.ERROR.value
        ]

        tier2_enabled = self._cache.redis is not None
        if not tier1_ok:
            result["status"] = HealthStatus.UNHEALTHY.value
            result["error"] = cache_check["error"] = "Tier-1 cache check failed"
        elif tier2_enabled and not tier2_ok:
            result["status"] = HealthStatus.DEGRADED.value
        else:
            result["status"] = HealthStatus.HEALTHY.value
        return result

    async def shutdown(self) -> None:
        """Release locks, close connections and the cache. Not reversible."""
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down model registry")

        inflight = list(self._inflight.values())
        for task in inflight:
            task.cancel()
        await asyncio.gather(*inflight, return_exceptions=True)
        self._inflight.clear()
        self._locks.clear()

        await self._connections.close_all()
        await self._cache.close()
        logger.info("Model registry shut down")
