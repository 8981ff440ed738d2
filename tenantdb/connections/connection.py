"""Per-tenant storage connection.

A TenantConnection wraps one SQLAlchemy ``AsyncEngine`` pointing at the
tenant's isolated database, together with the handles bound on it. Every
state change goes through ``TenantConnection.transition()``.
"""

import asyncio
import logging
import time
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from sqlalchemy import MetaData, text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from tenantdb.core.exceptions import TenantConnectionError, TenantConnectionTimeout

logger = logging.getLogger(__name__)


class ConnectionState(StrEnum):
    """Lifecycle state of a tenant connection."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


_ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.CONNECTING: frozenset(
        {
            ConnectionState.CONNECTED,
            ConnectionState.ERROR,
            ConnectionState.DISCONNECTED,
        }
    ),
    ConnectionState.CONNECTED: frozenset(
        {ConnectionState.ERROR, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.ERROR: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.DISCONNECTED: frozenset(),
}


def build_tenant_url(
    base_url: str | URL,
    tenant_id: str,
    prefix: str = "tenant_",
    username: str | None = None,
    password: str | None = None,
) -> URL:
    """Build the storage URL of a tenant's isolated database.

    Server backends get the database name ``{prefix}{tenant_id}`` on the
    shared endpoint. For SQLite the configured database is a directory and
    each tenant gets its own file ``{dir}/{prefix}{tenant_id}.db``.

    Args:
        base_url: Shared storage endpoint.
        tenant_id: Validated tenant identifier.
        prefix: Database name prefix.
        username: Optional user name overriding the one in ``base_url``.
        password: Optional password overriding the one in ``base_url``.
    """
    url = make_url(base_url)
    name = f"{prefix}{tenant_id}"

    if url.get_backend_name() == "sqlite":
        directory = Path(url.database or ".")
        return url.set(database=str(directory / f"{name}.db"))

    overrides: dict[str, Any] = {"database": name}
    if username is not None:
        overrides["username"] = username
    if password is not None:
        overrides["password"] = password
    return url.set(**overrides)


class TenantConnection:
    """Long-lived storage connection of one tenant.

    Attributes:
        tenant_id: Tenant identifier.
        url: Target URL of the tenant database.
        state: Current lifecycle state.
        created_at: Wall-clock creation time (epoch seconds).
        last_used: Wall-clock time of the last access (epoch seconds).
        metadata: SQLAlchemy metadata holding the tables bound here.
        models: Bound handles by logical model name.
    """

    def __init__(self, tenant_id: str, url: URL) -> None:
        self.tenant_id = tenant_id
        self.url = url
        self.state = ConnectionState.CONNECTING
        self.created_at = time.time()
        self.last_used = self.created_at
        self.metadata = MetaData()
        self.models: dict[str, Any] = {}
        self._engine: AsyncEngine | None = None
        self._ready = asyncio.Event()
        self._error: BaseException | None = None
        self._timeout = 0.0

    def __repr__(self) -> str:
        return (
            f"TenantConnection(tenant_id={self.tenant_id!r}, "
            f"state={self.state.value!r})"
        )

    @property
    def engine(self) -> AsyncEngine:
        """The tenant's engine; only available once connected."""
        if self._engine is None:
            raise TenantConnectionError(
                self.tenant_id,
                f"Connection for tenant {self.tenant_id} is not open",
            )
        return self._engine

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def safe_url(self) -> str:
        return self.url.render_as_string(hide_password=True)

    def touch(self) -> None:
        """Record an access."""
        self.last_used = time.time()

    def idle_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.last_used

    def transition(
        self, new_state: ConnectionState, error: BaseException | None = None
    ) -> None:
        """Move to ``new_state``, validating the edge and logging it.

        Raises:
            RuntimeError: If the transition is not allowed.
        """
        old_state = self.state
        if new_state is old_state:
            return
        if new_state not in _ALLOWED_TRANSITIONS[old_state]:
            raise RuntimeError(
                f"Illegal connection transition {old_state} -> {new_state} "
                f"for tenant {self.tenant_id}"
            )

        self.state = new_state
        if new_state is ConnectionState.CONNECTED:
            if old_state is ConnectionState.ERROR:
                logger.info("Database reconnected for tenant %s", self.tenant_id)
            else:
                logger.info("Database connected for tenant %s", self.tenant_id)
        elif new_state is ConnectionState.DISCONNECTED:
            logger.info("Database disconnected for tenant %s", self.tenant_id)
        elif new_state is ConnectionState.ERROR:
            self._error = error
            logger.error(
                "Database connection error for tenant %s: %s", self.tenant_id, error
            )

        if new_state is not ConnectionState.CONNECTING:
            self._ready.set()

    async def open(self, timeout: float, **engine_kwargs: Any) -> None:
        """Create the engine and probe it within ``timeout`` seconds.

        Raises:
            TimeoutError: If the probe did not finish in time.
            Exception: Any error raised by the driver while connecting.
        """
        self._timeout = timeout
        if self.url.get_backend_name() == "sqlite" and self.url.database:
            Path(self.url.database).parent.mkdir(parents=True, exist_ok=True)

        logger.debug(
            "Opening connection for tenant %s at %s", self.tenant_id, self.safe_url
        )
        try:
            engine = self._engine = create_async_engine(self.url, **engine_kwargs)
            async with asyncio.timeout(timeout):
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
        except BaseException as e:
            if self.state is ConnectionState.CONNECTING:
                self.transition(ConnectionState.ERROR, e)
            await self._dispose()
            raise

        if self.state is not ConnectionState.CONNECTING:
            await self._dispose()
            raise TenantConnectionError(
                self.tenant_id,
                f"Connection for tenant {self.tenant_id} was closed while opening",
            )
        self.transition(ConnectionState.CONNECTED)

    async def wait_ready(self) -> None:
        """Wait for an in-flight open to finish.

        Raises:
            TenantConnectionTimeout: If the open timed out.
            TenantConnectionError: If the open failed or the connection was
                closed meanwhile.
        """
        await self._ready.wait()
        if self.state is ConnectionState.CONNECTED:
            return
        if isinstance(self._error, TimeoutError):
            raise TenantConnectionTimeout(
                self.tenant_id, self._timeout
            ) from self._error
        raise TenantConnectionError(self.tenant_id) from self._error

    def mark_failed(self, error: BaseException) -> None:
        """Flag the connection as broken after a storage-level failure."""
        if self.state is ConnectionState.CONNECTED:
            self.transition(ConnectionState.ERROR, error)

    def mark_recovered(self) -> None:
        """Flag a broken connection as working again after a successful call."""
        if self.state is ConnectionState.ERROR and self._engine is not None:
            self.transition(ConnectionState.CONNECTED)

    async def close(self) -> None:
        """Dispose the engine and mark the connection disconnected."""
        try:
            await self._dispose()
        finally:
            self.models.clear()
            if self.state is not ConnectionState.DISCONNECTED:
                self.transition(ConnectionState.DISCONNECTED)

    async def _dispose(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            await engine.dispose()

    def to_dict(self, now: float | None = None) -> dict[str, Any]:
        """Stats snapshot of this connection."""
        return {
            "tenant_id": self.tenant_id,
            "state": self.state.value,
            "last_used": datetime.fromtimestamp(self.last_used, UTC).isoformat(),
            "idle_seconds": round(self.idle_seconds(now), 3),
        }
