from __future__ import annotations

import json
from typing import Any, Optional, Protocol

import redis.asyncio as aioredis
from redis import Redis


class Cache(Protocol):
    """Shared TTL cache used for lockout counters and invalidation markers."""

    async def increment(
        self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None
    ) -> int: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def pop(self, key: str) -> Optional[str]: ...


async def get_json(cache: Cache, key: str) -> Any:
    raw = await cache.get(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


async def set_json(cache: Cache, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
    await cache.set(key, json.dumps(value, separators=(",", ":")), ttl_seconds)


class RedisCache:
    """Thin async Redis wrapper implementing ``Cache``."""

    # INCRBY and EXPIRE in one round trip so a counter never outlives its window
    _INCREMENT_SCRIPT = """
local value = redis.call('INCRBY', KEYS[1], ARGV[1])
local ttl = tonumber(ARGV[2])
if ttl and ttl > 0 then
  redis.call('EXPIRE', KEYS[1], ttl)
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def increment(
        self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None
    ) -> int:
        result = await self._increment(keys=[key], args=[amount, ttl_seconds or 0])
        return int(result)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=max(1, ttl_seconds) if ttl_seconds else None)

    async def remove(self, key: str) -> None:
        await self.client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def pop(self, key: str) -> Optional[str]:
        return await self.client.getdel(key)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes async methods so it can be awaited like ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(RedisCache._INCREMENT_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def increment(
        self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None
    ) -> int:
        return int(self._increment(keys=[key], args=[amount, ttl_seconds or 0]))

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self.client.set(key, value, ex=max(1, ttl_seconds) if ttl_seconds else None)

    async def remove(self, key: str) -> None:
        self.client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    async def pop(self, key: str) -> Optional[str]:
        return self.client.getdel(key)

    async def close(self) -> None:
        self.client.close()
