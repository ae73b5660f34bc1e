from __future__ import annotations

from typing import List, Protocol

from sysauth.logging import get_logger
from sysauth.storage.redis_cache import Cache, get_json, set_json

logger = get_logger(__name__)

PRIVILEGED_PREFIX = "system:"

# Full permission set granted to bootstrap administrators.
SYSTEM_PERMISSIONS = [
    "system:users:read",
    "system:users:create",
    "system:users:update",
    "system:users:delete",
    "system:audit:read",
    "system:settings:read",
    "system:settings:update",
]


class PermissionSource(Protocol):
    def get_permissions(self, principal_id: str) -> List[str]: ...


def has_privileged_permission(permissions: List[str]) -> bool:
    return any(p.startswith(PRIVILEGED_PREFIX) for p in permissions)


class PermissionCache:
    """Read-through cache of a principal's resolved permission names."""

    def __init__(self, cache: Cache, source: PermissionSource, *, ttl_minutes: int = 60):
        self.cache = cache
        self.source = source
        self.ttl_seconds = ttl_minutes * 60

    @staticmethod
    def _key(principal_id: str) -> str:
        return f"user:permissions:{principal_id}"

    async def get_or_load(self, principal_id: str) -> List[str]:
        cached = await get_json(self.cache, self._key(principal_id))
        if isinstance(cached, list):
            return [str(p) for p in cached]
        permissions = sorted(self.source.get_permissions(principal_id))
        await set_json(self.cache, self._key(principal_id), permissions, self.ttl_seconds)
        return permissions

    async def invalidate(self, principal_id: str) -> None:
        await self.cache.remove(self._key(principal_id))
        logger.info("permission_cache_invalidated", principal_id=principal_id)
