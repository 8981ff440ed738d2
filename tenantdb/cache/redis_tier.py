"""Redis-backed tier-2 cache.

Thin async wrapper around ``redis.asyncio`` that tracks connectivity with an
explicit state machine:

    DISCONNECTED --connect ok--> CONNECTED
    CONNECTED --call failed--> ERROR
    ERROR --backoff elapsed--> RECONNECTING --probe ok--> CONNECTED
                                           --probe failed--> ERROR

Every failed or skipped call raises ``CacheTierUnavailable``; callers decide
what a failure means. Values are stored as JSON.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from tenantdb.core.exceptions import CacheTierUnavailable

logger = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 500


class Tier2State(StrEnum):
    """Connectivity state of the tier-2 client."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass
class RedisTierMetrics:
    """Counters for tier-2 operations."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0
    reconnects: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "errors": self.errors,
            "reconnects": self.reconnects,
        }


class RedisTier:
    """Shared tier-2 cache on Redis.

    Example:
        >>> tier = RedisTier("redis://localhost:6379/0", default_ttl=1800)
        >>> await tier.connect()
        >>> await tier.set("models:acme", {"User": {...}})
        >>> await tier.get("models:acme")
        >>> await tier.close()
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        password: str | None = None,
        default_ttl: int = 1800,
        connect_timeout: float = 10.0,
        command_timeout: float = 5.0,
        retry_backoff_cap: float = 2.0,
        retry_backoff_step: float = 0.05,
        client: Redis | None = None,
    ) -> None:
        """Initialize the tier-2 cache.

        Args:
            url: Redis connection URL.
            password: Optional password overriding the one in ``url``.
            default_ttl: TTL in seconds used when ``set`` gets none.
            connect_timeout: Seconds allowed for a connect or reconnect probe.
            command_timeout: Seconds allowed for each command.
            retry_backoff_cap: Upper bound of the reconnect delay.
            retry_backoff_step: Reconnect delay added per failed attempt.
            client: Pre-built client, used instead of one built from ``url``.
        """
        self._url = url
        self._password = password
        self._default_ttl = default_ttl
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout
        self._retry_backoff_cap = retry_backoff_cap
        self._retry_backoff_step = retry_backoff_step
        self._client = client
        self._state = Tier2State.DISCONNECTED
        self._closed = False
        self._attempts = 0
        self._next_attempt_at = 0.0
        self.metrics = RedisTierMetrics()

    @property
    def state(self) -> Tier2State:
        return self._state

    @property
    def is_available(self) -> bool:
        return self._state is Tier2State.CONNECTED

    @property
    def default_ttl(self) -> int:
        return self._default_ttl

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number ``attempt``."""
        return min(attempt * self._retry_backoff_step, self._retry_backoff_cap)

    def _transition(self, new_state: Tier2State) -> None:
        old_state, self._state = self._state, new_state
        if old_state is new_state:
            return
        if new_state is Tier2State.CONNECTED:
            if old_state is Tier2State.RECONNECTING:
                self.metrics.reconnects += 1
                logger.info("Redis tier reconnected")
            else:
                logger.info("Redis tier connected")
        elif new_state is Tier2State.ERROR:
            logger.warning(
                "Redis tier unavailable, next attempt in %.2fs",
                max(self._next_attempt_at - time.monotonic(), 0.0),
            )
        elif new_state is Tier2State.RECONNECTING:
            logger.info("Redis tier reconnecting (attempt %d)", self._attempts + 1)
        else:
            logger.info("Redis tier disconnected")

    def _build_client(self) -> Redis:
        return Redis.from_url(
            self._url,
            password=self._password,
            socket_connect_timeout=self._connect_timeout,
            socket_timeout=self._command_timeout,
            decode_responses=False,
        )

    def _record_failure(self, error: BaseException) -> None:
        self.metrics.errors += 1
        self._attempts += 1
        self._next_attempt_at = time.monotonic() + self.backoff_delay(self._attempts)
        logger.debug("Redis tier call failed: %s", error)
        self._transition(Tier2State.ERROR)

    async def connect(self) -> bool:
        """Connect and probe with PING. Never raises.

        Returns:
            True if the tier is connected afterwards.
        """
        if self._closed:
            return False
        if self._client is None:
            self._client = self._build_client()

        try:
            async with asyncio.timeout(self._connect_timeout):
                await self._client.ping()
        except (RedisError, OSError, TimeoutError) as e:
            logger.warning("Redis tier connection failed: %s", e)
            self._record_failure(e)
            return False

        self._attempts = 0
        self._transition(Tier2State.CONNECTED)
        return True

    async def ensure_available(self) -> bool:
        """Return whether calls may be attempted, probing when the backoff allows."""
        if self._closed:
            return False
        if self._state is Tier2State.CONNECTED:
            return True
        if self._state is Tier2State.DISCONNECTED:
            return await self.connect()
        due = time.monotonic() >= self._next_attempt_at
        if self._state is Tier2State.ERROR and due:
            self._transition(Tier2State.RECONNECTING)
            return await self.connect()
        return False

    async def _call[R](
        self, operation: str, fn: Callable[[Redis], Awaitable[R]]
    ) -> R:
        if not await self.ensure_available() or (client := self._client) is None:
            raise CacheTierUnavailable(f"Redis tier unavailable for {operation}")

        try:
            async with asyncio.timeout(self._command_timeout):
                return await fn(client)
        except (RedisError, OSError, TimeoutError) as e:
            self._record_failure(e)
            raise CacheTierUnavailable(f"Redis {operation} failed: {e}") from e

    async def ping(self) -> bool:
        """Round-trip check. Raises CacheTierUnavailable on failure."""
        return bool(await self._call("ping", lambda r: r.ping()))

    async def get(self, key: str) -> Any | None:
        """Get and decode a value, or None if absent."""
        raw = await self._call("get", lambda r: r.get(key))
        if raw is None:
            self.metrics.misses += 1
            return None
        try:
            value = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            self.metrics.errors += 1
            raise CacheTierUnavailable(f"Undecodable value under {key}: {e}") from e
        self.metrics.hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store a value with a TTL in seconds."""
        payload = json.dumps(value, separators=(",", ":"), default=str)
        ttl_seconds = ttl if ttl is not None else self._default_ttl
        await self._call("set", lambda r: r.setex(key, ttl_seconds, payload))
        self.metrics.sets += 1

    async def delete(self, *keys: str) -> int:
        """Delete keys. Returns the number removed."""
        if not keys:
            return 0
        removed = await self._call("delete", lambda r: r.delete(*keys))
        self.metrics.deletes += int(removed)
        return int(removed)

    async def scan_keys(self, pattern: str) -> list[str]:
        """Collect keys matching a glob pattern with SCAN (never KEYS)."""

        async def scan(client: Redis) -> list[str]:
            return [
                key.decode() if isinstance(key, bytes) else key
                async for key in client.scan_iter(
                    match=pattern, count=DELETE_BATCH_SIZE
                )
            ]

        return await self._call("scan", scan)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern. Returns the number removed."""
        keys = await self.scan_keys(pattern)
        count = 0
        for i in range(0, len(keys), DELETE_BATCH_SIZE):
            count += await self.delete(*keys[i : i + DELETE_BATCH_SIZE])
        if count:
            logger.debug("Deleted %d Redis keys matching %s", count, pattern)
        return count

    async def count_keys(self, pattern: str) -> int:
        return len(await self.scan_keys(pattern))

    async def close(self) -> None:
        """Close the client. The tier stays unavailable afterwards."""
        self._closed = True
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.aclose()
            except (RedisError, OSError) as e:
                logger.warning("Error closing Redis client: %s", e)
        self._transition(Tier2State.DISCONNECTED)

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "connected": self.is_available,
            "attempts": self._attempts,
            **self.metrics.to_dict(),
        }
