from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sysauth.config import Settings
from sysauth.logging import get_logger
from sysauth.storage.models import utcnow
from sysauth.storage.redis_cache import Cache

logger = get_logger(__name__)


@dataclass
class LockoutResult:
    attempts: int
    is_locked: bool
    lockout_seconds: int
    locked_until: Optional[datetime]
    should_notify: bool


def normalize_email(email: str) -> str:
    return email.strip().lower()


class LockoutGuard:
    """Progressive brute-force lockout keyed by normalized email.

    Counters live only in the shared cache so that unknown emails are throttled
    exactly like real accounts. The attempt counter slides: every failure
    refreshes its TTL to ``lockout_window_minutes``. Reaching an attempt whose
    scheduled delay is non-zero writes a ``login:blocked`` key that expires with
    the lockout itself.
    """

    def __init__(
        self,
        cache: Cache,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cache = cache
        self.delays = list(settings.lockout_progressive_delays)
        self.window_seconds = settings.lockout_window_minutes * 60
        self.notify_after_seconds = settings.lockout_notify_after_seconds
        self._clock = clock or utcnow

    @staticmethod
    def _attempts_key(email: str) -> str:
        return f"login:attempts:{normalize_email(email)}"

    @staticmethod
    def _blocked_key(email: str) -> str:
        return f"login:blocked:{normalize_email(email)}"

    def lockout_seconds_for(self, attempts: int) -> int:
        """Delay scheduled for the ``attempts``-th consecutive failure."""
        if attempts <= 0:
            return 0
        index = min(attempts, len(self.delays)) - 1
        return self.delays[index]

    async def is_blocked(self, email: str) -> bool:
        return await self.cache.exists(self._blocked_key(email))

    async def locked_until(self, email: str) -> Optional[datetime]:
        raw = await self.cache.get(self._blocked_key(email))
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("lockout_value_unparseable", key=self._blocked_key(email))
            return None

    async def record_failed_attempt(self, email: str) -> LockoutResult:
        attempts = await self.cache.increment(
            self._attempts_key(email), 1, self.window_seconds
        )
        lockout_seconds = self.lockout_seconds_for(attempts)
        if lockout_seconds <= 0:
            logger.info("login_attempt_failed", attempts=attempts)
            return LockoutResult(
                attempts=attempts,
                is_locked=False,
                lockout_seconds=0,
                locked_until=None,
                should_notify=False,
            )

        locked_until = self._clock() + timedelta(seconds=lockout_seconds)
        await self.cache.set(
            self._blocked_key(email), locked_until.isoformat(), lockout_seconds
        )
        logger.warning(
            "login_lockout_applied",
            attempts=attempts,
            lockout_seconds=lockout_seconds,
            locked_until=locked_until.isoformat(),
        )
        return LockoutResult(
            attempts=attempts,
            is_locked=True,
            lockout_seconds=lockout_seconds,
            locked_until=locked_until,
            should_notify=lockout_seconds >= self.notify_after_seconds,
        )

    async def remaining_attempts(self, email: str) -> int:
        """Failures left before the first non-zero delay kicks in."""
        raw = await self.cache.get(self._attempts_key(email))
        attempts = int(raw) if raw else 0
        threshold = next(
            (i + 1 for i, delay in enumerate(self.delays) if delay > 0),
            len(self.delays) + 1,
        )
        return max(0, threshold - attempts - 1)

    async def reset(self, email: str) -> None:
        await self.cache.remove(self._attempts_key(email))
        await self.cache.remove(self._blocked_key(email))
