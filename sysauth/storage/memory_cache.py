from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple


class MemoryCache:
    """Process-local ``Cache`` used when Redis is unavailable (tests, local dev).

    Expiry is enforced lazily on access. ``clock`` returns epoch seconds and can
    be swapped in tests to move time forward.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if not ttl_seconds:
            return None
        return self._clock() + max(1, ttl_seconds)

    async def increment(
        self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None
    ) -> int:
        with self._lock:
            current = int(self._live(key) or 0) + amount
            expires_at = self._expiry(ttl_seconds)
            if expires_at is None and key in self._entries:
                expires_at = self._entries[key][1]
            self._entries[key] = (str(current), expires_at)
            return current

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._entries[key] = (value, self._expiry(ttl_seconds))

    async def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._entries.pop(key, None)
            return value

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
