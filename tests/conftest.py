"""Shared pytest fixtures for tenantdb tests."""

import fnmatch
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tenantdb.cache.memory import MemoryCache
from tenantdb.cache.redis_tier import RedisTier
from tenantdb.cache.tiered import TieredCache
from tenantdb.connections.manager import ConnectionManager


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis``.

    Setting ``down`` makes every command fail the way a dropped server does.
    """

    def __init__(self) -> None:
        self.store: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}
        self.down = False
        self.closed = False
        self.calls: list[str] = []

    def _check(self, command: str) -> None:
        self.calls.append(command)
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def ping(self) -> bool:
        self._check("ping")
        return True

    async def get(self, key: str) -> bytes | None:
        self._check("get")
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str | bytes) -> bool:
        self._check("setex")
        self.store[key] = value.encode() if isinstance(value, str) else value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys: str) -> int:
        self._check("delete")
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed

    async def scan_iter(
        self, match: str | None = None, count: int | None = None
    ) -> AsyncIterator[bytes]:
        self._check("scan")
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key.encode()

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def anyio_backend() -> str:
    """Run async tests on asyncio only."""
    return "asyncio"


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_tier(fake_redis: FakeRedis) -> RedisTier:
    """Tier-2 cache on the fake client, retrying immediately after failures."""
    return RedisTier(
        client=fake_redis,  # type: ignore[arg-type]
        retry_backoff_step=0.0,
    )


@pytest.fixture
def tiered_cache(redis_tier: RedisTier) -> TieredCache:
    return TieredCache(MemoryCache[Any](max_entries=50), redis_tier)


@pytest.fixture
def sqlite_base_url(tmp_path: Path) -> str:
    """SQLite base URL whose database part is a per-test directory."""
    return f"sqlite+aiosqlite:///{tmp_path / 'tenants'}"


@pytest.fixture
async def connection_manager(
    sqlite_base_url: str,
) -> AsyncIterator[ConnectionManager]:
    manager = ConnectionManager(sqlite_base_url, connect_timeout=5.0)
    yield manager
    await manager.close_all()
