from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from sysauth.logging import get_logger
from sysauth.service.credentials import generate_url_token, hash_secret
from sysauth.storage.models import MagicLinkToken, new_id, utcnow

logger = get_logger(__name__)


class MagicLinkStore(Protocol):
    def add_magic_link(self, token: MagicLinkToken) -> None: ...

    def get_magic_link_by_hash(self, token_hash: str) -> Optional[MagicLinkToken]: ...

    def save_magic_link(self, token: MagicLinkToken) -> None: ...

    def list_magic_links(self, principal_id: str) -> List[MagicLinkToken]: ...


class MagicLinkService:
    """Single-use sign-in links; only the SHA-256 of the token is stored."""

    def __init__(
        self,
        store: MagicLinkStore,
        *,
        ttl_minutes: int = 15,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock or utcnow

    def issue(self, principal_id: str) -> str:
        """Invalidate older unused links and return a fresh plaintext token."""
        now = self._clock()
        for link in self.store.list_magic_links(principal_id):
            if link.used_at is None:
                link.used_at = now
                self.store.save_magic_link(link)
        token = generate_url_token(32)
        self.store.add_magic_link(
            MagicLinkToken(
                id=new_id(),
                principal_id=principal_id,
                token_hash=hash_secret(token),
                expires_at=now + self.ttl,
                created_at=now,
            )
        )
        return token

    def _valid_link(self, token: str, now: datetime) -> Optional[MagicLinkToken]:
        if not token:
            return None
        link = self.store.get_magic_link_by_hash(hash_secret(token))
        if link is None or not link.is_valid(now):
            logger.info("magic_link_rejected", found=link is not None)
            return None
        return link

    def peek(self, token: str) -> Optional[str]:
        """Return the principal id of a usable link without spending it."""
        link = self._valid_link(token, self._clock())
        return link.principal_id if link else None

    def consume(self, token: str) -> Optional[str]:
        """Mark the link used and return its principal id, or ``None`` if invalid."""
        now = self._clock()
        link = self._valid_link(token, now)
        if link is None:
            return None
        link.used_at = now
        self.store.save_magic_link(link)
        return link.principal_id
