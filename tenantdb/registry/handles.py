"""Bound model handles.

A ``ModelHandle`` is what callers get back from the registry: a schema bound
to one tenant connection as a SQLAlchemy table, with a few async helpers
boundary layers use for smoke checks.
"""

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy import ColumnElement, Table, func, insert, select
from sqlalchemy.exc import DBAPIError

from tenantdb.connections.connection import TenantConnection
from tenantdb.registry.schemas import SchemaDefinition

logger = logging.getLogger(__name__)


class ModelHandle:
    """A logical model bound to a tenant connection."""

    def __init__(
        self,
        name: str,
        schema: SchemaDefinition,
        table: Table,
        connection: TenantConnection,
        materialized: bool = False,
    ) -> None:
        self.name = name
        self.schema = schema
        self.table = table
        self.materialized = materialized
        self._connection = connection

    def __repr__(self) -> str:
        return (
            f"ModelHandle(name={self.name!r}, collection={self.collection_name!r}, "
            f"tenant_id={self.tenant_id!r})"
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ModelHandle):
            return NotImplemented
        return (
            self.name == other.name
            and self.collection_name == other.collection_name
            and self._connection is other._connection
        )

    def __hash__(self) -> int:
        return hash((self.name, self.collection_name, id(self._connection)))

    @property
    def collection_name(self) -> str:
        return self.table.name

    @property
    def tenant_id(self) -> str:
        return self._connection.tenant_id

    @property
    def connection(self) -> TenantConnection:
        return self._connection

    def _where(self, filters: Mapping[str, Any]) -> list[ColumnElement[bool]]:
        clauses = []
        for field, value in filters.items():
            if field not in self.table.c:
                raise ValueError(f"Unknown field {field!r} for model {self.name}")
            clauses.append(self.table.c[field] == value)
        return clauses

    def _record(self, error: DBAPIError) -> None:
        if error.connection_invalidated:
            self._connection.mark_failed(error)

    async def count(self, **filters: Any) -> int:
        """Number of rows matching the equality filters."""
        stmt = (
            select(func.count()).select_from(self.table).where(*self._where(filters))
        )
        try:
            async with self._connection.engine.connect() as conn:
                result = await conn.scalar(stmt)
        except DBAPIError as e:
            self._record(e)
            raise
        self._connection.mark_recovered()
        return int(result or 0)

    async def find(
        self, limit: int | None = None, **filters: Any
    ) -> list[dict[str, Any]]:
        """Rows matching the equality filters, ordered by id."""
        stmt = (
            select(self.table)
            .where(*self._where(filters))
            .order_by(self.table.c.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self._connection.engine.connect() as conn:
                result = await conn.execute(stmt)
                rows = [dict(row) for row in result.mappings()]
        except DBAPIError as e:
            self._record(e)
            raise
        self._connection.mark_recovered()
        return rows

    async def find_one(self, **filters: Any) -> dict[str, Any] | None:
        rows = await self.find(limit=1, **filters)
        return rows[0] if rows else None

    async def insert(self, values: Mapping[str, Any]) -> Any:
        """Insert one row. Returns its primary key."""
        self._where(values)
        try:
            async with self._connection.engine.begin() as conn:
                result = await conn.execute(insert(self.table).values(**values))
        except DBAPIError as e:
            self._record(e)
            raise
        self._connection.mark_recovered()
        return result.inserted_primary_key[0] if result.inserted_primary_key else None


async def bind_schema(
    connection: TenantConnection,
    name: str,
    schema: SchemaDefinition,
    *,
    create: bool = True,
) -> ModelHandle:
    """Bind a schema to a tenant connection.

    Reuses the handle already bound on the connection under ``name`` when it
    was built from an equal schema (and, with ``create``, already had its
    table created). With ``create`` the table and its indexes are created in
    the tenant database if missing.
    """
    existing = connection.models.get(name)
    if (
        isinstance(existing, ModelHandle)
        and existing.schema == schema
        and (existing.materialized or not create)
    ):
        return existing

    table = schema.to_table(connection.metadata)
    if create:
        async with connection.engine.begin() as conn:
            await conn.run_sync(table.create, checkfirst=True)
        logger.debug(
            "Created collection %s for model %s (tenant %s)",
            table.name,
            name,
            connection.tenant_id,
        )

    handle = ModelHandle(name, schema, table, connection, materialized=create)
    connection.models[name] = handle
    return handle
