from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis import Redis

from identity_core.storage.models import utcnow


class Cache(Protocol):
    """Advisory key/value cache. Values must be JSON serializable."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def evict(self, key: str) -> None: ...

    async def evict_all(self, prefix: str) -> int: ...


def _ttl(ttl_seconds: float) -> int:
    # Redis rejects zero or negative expirations
    return max(1, int(ttl_seconds))


class MemoryCache:
    """In-process cache honoring TTLs against an injectable clock.

    Values are stored JSON-encoded so callers see the same copy semantics as
    with Redis.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            raw, expires_at = entry
            if expires_at <= now:
                self._entries.pop(key, None)
                return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        expires_at = self._clock() + timedelta(seconds=_ttl(ttl_seconds))
        raw = json.dumps(value)
        with self._lock:
            self._entries[key] = (raw, expires_at)

    async def evict(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def evict_all(self, prefix: str) -> int:
        with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
        return len(keys)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisCache:
    """Thin Redis wrapper implementing the cache protocol."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.client.set(key, json.dumps(value), ex=_ttl(ttl_seconds))

    async def evict(self, key: str) -> None:
        await self.client.delete(key)

    async def evict_all(self, prefix: str) -> int:
        removed = 0
        batch = []
        async for key in self.client.scan_iter(match=f"{prefix}*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                removed += await self.client.delete(*batch)
                batch = []
        if batch:
            removed += await self.client.delete(*batch)
        return removed

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues when every
    test runs under its own ``asyncio.run``, but exposes the async protocol.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def get(self, key: str) -> Optional[Any]:
        raw = self._sync_client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._sync_client.set(key, json.dumps(value), ex=_ttl(ttl_seconds))

    async def evict(self, key: str) -> None:
        self._sync_client.delete(key)

    async def evict_all(self, prefix: str) -> int:
        keys = list(self._sync_client.scan_iter(match=f"{prefix}*", count=500))
        if not keys:
            return 0
        return self._sync_client.delete(*keys)

    async def close(self) -> None:
        self._sync_client.close()
