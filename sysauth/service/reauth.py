from __future__ import annotations

from typing import Iterable, List, Optional, Protocol

from redis.exceptions import RedisError

from sysauth.config import SESSION_MARKER_MARGIN_SECONDS, Settings
from sysauth.logging import get_logger
from sysauth.service.errors import AuthError, AuthErrorKind
from sysauth.service.transitions import Effect
from sysauth.storage.models import Device, DeviceStatus
from sysauth.storage.redis_cache import Cache

logger = get_logger(__name__)


class SessionSource(Protocol):
    def list_devices(
        self, principal_id: str, status: Optional[DeviceStatus] = None
    ) -> List[Device]: ...


class ForceReauthCoordinator:
    """Out-of-band invalidation markers checked on every authenticated request.

    Two independent markers are kept per session (device row id):

    - ``session:force-reauth:{id}``: set when permissions change, cleared by
      the next successful login or approval on that session.
    - ``revoked_session:{id}``: set on logout, admin revoke, denial and
      deactivation.

    Both live past the last second an access token minted before them still
    decodes, clock-skew leeway included.
    """

    def __init__(self, cache: Cache, sessions: SessionSource, settings: Settings):
        self.cache = cache
        self.sessions = sessions
        self.flag_ttl_seconds = settings.force_reauth_ttl_minutes * 60
        self.revoked_ttl_seconds = (
            settings.access_token_max_age_seconds + SESSION_MARKER_MARGIN_SECONDS
        )

    @staticmethod
    def _flag_key(session_id: str) -> str:
        return f"session:force-reauth:{session_id}"

    @staticmethod
    def _revoked_key(session_id: str) -> str:
        return f"revoked_session:{session_id}"

    async def set_flag(self, session_id: str) -> None:
        await self.cache.set(self._flag_key(session_id), "1", self.flag_ttl_seconds)

    async def has_flag(self, session_id: str) -> bool:
        return await self.cache.exists(self._flag_key(session_id))

    async def clear_flag(self, session_id: str) -> None:
        await self.cache.remove(self._flag_key(session_id))

    async def set_flag_for_all_sessions(self, principal_id: str) -> List[str]:
        """Write one flag per live session the principal owns; returns their ids."""
        session_ids = [
            d.id
            for d in self.sessions.list_devices(principal_id)
            if d.status != DeviceStatus.REVOKED
        ]
        for session_id in session_ids:
            await self.set_flag(session_id)
        logger.info(
            "force_reauth_flagged",
            principal_id=principal_id,
            session_count=len(session_ids),
        )
        return session_ids

    async def mark_session_revoked(self, session_id: str) -> None:
        await self.cache.set(self._revoked_key(session_id), "1", self.revoked_ttl_seconds)

    async def mark_sessions_revoked(self, session_ids: Iterable[str]) -> None:
        for session_id in session_ids:
            await self.mark_session_revoked(session_id)

    async def clear_session_revoked(self, session_id: str) -> None:
        await self.cache.remove(self._revoked_key(session_id))

    async def is_session_revoked(self, session_id: str) -> bool:
        try:
            return await self.cache.exists(self._revoked_key(session_id))
        except (RedisError, OSError) as exc:
            logger.warning(
                "revoked_session_check_failed", session_id=session_id, error=str(exc)
            )
            return False

    async def check(self, session_id: Optional[str]) -> Optional[AuthError]:
        """Return the invalidation error for ``session_id``, if any."""
        if not session_id:
            return None
        if await self.is_session_revoked(session_id):
            return AuthError(AuthErrorKind.SESSION_REVOKED, "session has been revoked")
        if await self.has_flag(session_id):
            return AuthError(
                AuthErrorKind.FORCE_REAUTH_REQUIRED,
                "permissions changed; please sign in again",
            )
        return None

    async def apply(self, session_id: str, effects: Iterable[Effect]) -> None:
        """Perform the session-marker effects of a device transition."""
        for effect in effects:
            if effect == Effect.SET_FORCE_REAUTH:
                await self.set_flag(session_id)
            elif effect == Effect.CLEAR_FORCE_REAUTH:
                await self.clear_flag(session_id)
            elif effect == Effect.MARK_SESSION_REVOKED:
                await self.mark_session_revoked(session_id)
            elif effect == Effect.CLEAR_SESSION_REVOKED:
                await self.clear_session_revoked(session_id)
