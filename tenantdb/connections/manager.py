"""Tenant connection manager.

Owns one long-lived storage connection per tenant: creates it on first
access, reuses it while healthy, recreates it when broken and closes it
once it has been idle longer than the configured timeout.

Usage:
    manager = ConnectionManager("postgresql+asyncpg://db.internal:5432/")
    manager.start()

    connection = await manager.get_connection("acme")
    ...
    await manager.close_all()
"""

import asyncio
import logging
import re
import time
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from sqlalchemy.engine import URL

from tenantdb.connections.connection import (
    ConnectionState,
    TenantConnection,
    build_tenant_url,
)
from tenantdb.core.exceptions import (
    InvalidTenantId,
    TenantConnectionError,
    TenantConnectionTimeout,
)

if TYPE_CHECKING:
    from tenantdb.core.settings import StorageSettings

logger = logging.getLogger(__name__)

TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

IdleListener = Callable[[Sequence[str]], None]


def validate_tenant_id(tenant_id: str) -> str:
    """Validate a tenant identifier.

    Raises:
        InvalidTenantId: If the id is empty or contains disallowed characters.
    """
    if not isinstance(tenant_id, str) or not TENANT_ID_PATTERN.match(tenant_id):
        raise InvalidTenantId(tenant_id)
    return tenant_id


class ConnectionManager:
    """Manages per-tenant storage connections.

    At most one TenantConnection exists per tenant. Concurrent callers asking
    for a tenant whose connection is still opening wait for that open rather
    than starting another one.
    """

    def __init__(
        self,
        base_url: str | URL,
        *,
        db_name_prefix: str = "tenant_",
        username: str | None = None,
        password: str | None = None,
        connect_timeout: float = 10.0,
        idle_timeout: float = 30 * 60,
        sweep_interval: float = 5 * 60,
        pool_size: int = 10,
        echo: bool = False,
        idle_listener: IdleListener | None = None,
    ) -> None:
        """Initialize the connection manager.

        Args:
            base_url: Shared storage endpoint.
            db_name_prefix: Prefix of each tenant's database name.
            username: Storage user name applied to every tenant URL.
            password: Storage password applied to every tenant URL.
            connect_timeout: Seconds allowed for opening a connection.
            idle_timeout: Idle seconds after which a connection is closed.
            sweep_interval: Seconds between idle sweeps.
            pool_size: Pool size of server-backend engines.
            echo: Echo SQL statements.
            idle_listener: Called with the tenant ids closed by each sweep.
        """
        self._base_url = base_url
        self._db_name_prefix = db_name_prefix
        self._username = username
        self._password = password
        self._connect_timeout = connect_timeout
        self._idle_timeout = idle_timeout
        self._sweep_interval = sweep_interval
        self._pool_size = pool_size
        self._echo = echo
        self.idle_listener = idle_listener
        self._connections: dict[str, TenantConnection] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings: "StorageSettings") -> "ConnectionManager":
        """Create a manager from the ``storage`` settings group."""
        return cls(
            settings.base_url,
            db_name_prefix=settings.db_name_prefix,
            username=settings.username,
            password=(
                settings.password.get_secret_value() if settings.password else None
            ),
            connect_timeout=settings.connect_timeout,
            idle_timeout=settings.idle_timeout,
            sweep_interval=settings.sweep_interval,
            pool_size=settings.pool_size,
            echo=settings.echo,
        )

    @property
    def idle_timeout(self) -> float:
        return self._idle_timeout

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._connections

    def tenant_url(self, tenant_id: str) -> URL:
        """Target URL of a tenant's isolated database."""
        return build_tenant_url(
            self._base_url,
            validate_tenant_id(tenant_id),
            prefix=self._db_name_prefix,
            username=self._username,
            password=self._password,
        )

    def _engine_options(self, url: URL) -> dict[str, Any]:
        options: dict[str, Any] = {"echo": self._echo, "pool_pre_ping": True}
        if url.get_backend_name() != "sqlite":
            options["pool_size"] = self._pool_size
            options["max_overflow"] = self._pool_size
        return options

    async def get_connection(self, tenant_id: str) -> TenantConnection:
        """Get the tenant's connection, creating it when needed.

        Raises:
            InvalidTenantId: If the tenant id is malformed.
            TenantConnectionTimeout: If opening did not finish in time.
            TenantConnectionError: If opening failed.
        """
        validate_tenant_id(tenant_id)

        connection = self._connections.get(tenant_id)
        if connection is not None:
            if connection.state is ConnectionState.CONNECTED:
                connection.touch()
                return connection

            if connection.state is ConnectionState.CONNECTING:
                await connection.wait_ready()
                connection.touch()
                return connection

            logger.warning(
                "Connection in %s state for tenant %s, creating new one",
                connection.state.value,
                tenant_id,
            )

        return await self._create_connection(tenant_id, stale=connection)

    async def _create_connection(
        self, tenant_id: str, stale: TenantConnection | None = None
    ) -> TenantConnection:
        url = self.tenant_url(tenant_id)
        connection = TenantConnection(tenant_id, url)
        # registered before the first await so concurrent callers wait on it
        self._connections[tenant_id] = connection

        try:
            if stale is not None:
                await self._close(tenant_id, stale)
            await connection.open(
                self._connect_timeout, **self._engine_options(url)
            )
        except TimeoutError as e:
            self._forget(tenant_id, connection, e)
            raise TenantConnectionTimeout(tenant_id, self._connect_timeout) from e
        except TenantConnectionError as e:
            self._forget(tenant_id, connection, e)
            raise
        except Exception as e:
            self._forget(tenant_id, connection, e)
            raise TenantConnectionError(tenant_id) from e
        except BaseException as e:
            self._forget(tenant_id, connection, e)
            raise

        connection.touch()
        logger.info(
            "Created database connection for tenant %s (%s)",
            tenant_id,
            connection.safe_url,
        )
        return connection

    def _forget(
        self, tenant_id: str, connection: TenantConnection, error: BaseException
    ) -> None:
        # releases callers waiting on an open that never reached a final state
        if connection.state is ConnectionState.CONNECTING:
            connection.transition(ConnectionState.ERROR, error)
        if self._connections.get(tenant_id) is connection:
            del self._connections[tenant_id]

    async def close_connection(self, tenant_id: str) -> None:
        """Close and forget a tenant's connection. No-op if absent."""
        connection = self._connections.pop(tenant_id, None)
        if connection is not None:
            await self._close(tenant_id, connection)

    async def _close(self, tenant_id: str, connection: TenantConnection) -> None:
        try:
            await connection.close()
            logger.info("Closed database connection for tenant %s", tenant_id)
        except Exception as e:
            logger.error(
                "Error closing database connection for tenant %s: %s", tenant_id, e
            )

    async def close_inactive_connections(self) -> list[str]:
        """Close every connection idle longer than the idle timeout.

        Connections still opening are skipped. Returns the closed tenant ids.
        """
        now = time.time()
        candidates = [
            tenant_id
            for tenant_id, connection in self._connections.items()
            if connection.state is not ConnectionState.CONNECTING
            and connection.idle_seconds(now) > self._idle_timeout
        ]

        closed: list[str] = []
        for tenant_id in candidates:
            connection = self._connections.get(tenant_id)
            # touched while earlier candidates were closing
            if connection is None or connection.idle_seconds() <= self._idle_timeout:
                continue
            await self.close_connection(tenant_id)
            closed.append(tenant_id)

        if closed:
            logger.info("Closed %d inactive connections", len(closed))
            self._notify_idle(closed)
        return closed

    def _notify_idle(self, closed: list[str]) -> None:
        if self.idle_listener is None:
            return
        try:
            self.idle_listener(closed)
        except Exception:
            logger.exception("Idle listener failed")

    def start(self) -> None:
        """Start the periodic idle sweep. Must be called inside a running loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(
            self._sweep_loop(), name="tenantdb-idle-sweep"
        )
        logger.debug("Started idle sweep every %gs", self._sweep_interval)

    @property
    def is_sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.close_inactive_connections()
            except Exception:
                logger.exception("Error during inactive connection cleanup")

    async def stop(self) -> None:
        """Stop the periodic idle sweep."""
        task, self._sweep_task = self._sweep_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def get_connection_state(self, tenant_id: str) -> ConnectionState | None:
        connection = self._connections.get(tenant_id)
        return connection.state if connection is not None else None

    def get_stats(self) -> dict[str, Any]:
        """Snapshot of the managed connections."""
        now = time.time()
        return {
            "total_connections": len(self._connections),
            "connections": [
                connection.to_dict(now) for connection in self._connections.values()
            ],
        }

    async def close_all(self) -> None:
        """Stop the sweep and close every connection concurrently."""
        await self.stop()

        tenant_ids = list(self._connections)
        results = await asyncio.gather(
            *(self.close_connection(tenant_id) for tenant_id in tenant_ids),
            return_exceptions=True,
        )
        for tenant_id, result in zip(tenant_ids, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Error closing connection for tenant %s: %s", tenant_id, result
                )
        logger.info("Closed all %d database connections", len(tenant_ids))
