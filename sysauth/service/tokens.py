from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol

from sysauth.config import Settings
from sysauth.logging import get_logger
from sysauth.service.credentials import generate_url_token, hash_secret
from sysauth.storage.models import RefreshToken, new_id, utcnow

logger = get_logger(__name__)

USER_TYPE_SYSTEM = "system"
PURPOSE_MFA_VERIFICATION = "mfa_verification"
PURPOSE_MFA_SETUP = "mfa_setup"


class RefreshTokenStore(Protocol):
    def add_refresh_token(self, token: RefreshToken) -> None: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def save_refresh_token(self, token: RefreshToken) -> None: ...

    def list_refresh_tokens(
        self,
        principal_id: Optional[str] = None,
        *,
        device_id: Optional[str] = None,
        active_only: bool = True,
        now: Optional[datetime] = None,
    ) -> List[RefreshToken]: ...


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    session_id: str
    expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class SessionTokenIssuer:
    """Mints HS256 access tokens and opaque refresh tokens bound to a session.

    The session id is the device row id. Refresh tokens are persisted only as
    SHA-256 hashes and each session owns at most one active refresh token:
    issuing for a session revokes whatever was linked to it before.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow
        self._clock_skew_leeway = timedelta(seconds=settings.jwt_clock_skew_seconds)

    @property
    def access_token_expiration(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def refresh_expiration(self, remember_me: bool) -> timedelta:
        if remember_me:
            return timedelta(days=self.settings.remember_me_ttl_days)
        return timedelta(days=self.settings.refresh_token_ttl_days)

    # -- JWT ---------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    # -- access tokens -----------------------------------------------------

    def generate_access_token(
        self,
        principal_id: str,
        email: str,
        user_type: str,
        permissions: List[str],
        session_id: str,
    ) -> tuple[str, datetime]:
        expires_at = self._clock() + self.access_token_expiration
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": principal_id,
            "email": email,
            "user_type": user_type,
            "permissions": sorted(permissions),
            "sid": session_id,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    def decode_access_token(self, token: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        if not payload.get("sub") or not payload.get("sid"):
            return None
        return payload

    # -- purpose tokens (MFA challenge / setup) ----------------------------

    def issue_purpose_token(self, principal_id: str, purpose: str) -> str:
        expires_at = self._clock() + timedelta(minutes=self.settings.mfa_token_ttl_minutes)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": principal_id,
            "token_type": purpose,
            "jti": str(uuid.uuid4()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload)

    def decode_purpose_token(self, token: str, purpose: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != purpose or not payload.get("sub"):
            return None
        return payload

    # -- refresh tokens ----------------------------------------------------

    def generate_refresh_token(self) -> str:
        return generate_url_token(32)

    def issue(
        self,
        principal_id: str,
        email: str,
        permissions: List[str],
        session_id: str,
        *,
        remember_me: bool,
    ) -> IssuedTokens:
        """Mint an access/refresh pair for a trusted session."""
        now = self._clock()
        access_token, expires_at = self.generate_access_token(
            principal_id, email, USER_TYPE_SYSTEM, permissions, session_id
        )
        self.revoke_for_device(session_id)
        raw_refresh = self.generate_refresh_token()
        record = RefreshToken(
            id=new_id(),
            principal_id=principal_id,
            token_hash=hash_secret(raw_refresh),
            expires_at=now + self.refresh_expiration(remember_me),
            remember_me=remember_me,
            device_id=session_id,
            created_at=now,
        )
        self.store.add_refresh_token(record)
        logger.info(
            "session_tokens_issued",
            principal_id=principal_id,
            session_id=session_id,
            remember_me=remember_me,
        )
        return IssuedTokens(
            access_token=access_token,
            refresh_token=raw_refresh,
            session_id=session_id,
            expires_at=expires_at,
            refresh_expires_at=record.expires_at,
        )

    def find_active_refresh_token(self, raw_token: str) -> Optional[RefreshToken]:
        record = self.store.get_refresh_token_by_hash(hash_secret(raw_token))
        if record is None or not record.is_active(self._clock()):
            return None
        return record

    def revoke(self, record: RefreshToken) -> None:
        if record.is_revoked:
            return
        record.is_revoked = True
        record.revoked_at = self._clock()
        self.store.save_refresh_token(record)

    def revoke_for_device(self, session_id: str) -> int:
        tokens = self.store.list_refresh_tokens(device_id=session_id, now=self._clock())
        for token in tokens:
            self.revoke(token)
        return len(tokens)

    def revoke_all_for_principal(self, principal_id: str) -> int:
        tokens = self.store.list_refresh_tokens(principal_id, now=self._clock())
        for token in tokens:
            self.revoke(token)
        if tokens:
            logger.info(
                "refresh_tokens_revoked", principal_id=principal_id, count=len(tokens)
            )
        return len(tokens)
