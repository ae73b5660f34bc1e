from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Union

import pyotp

from sysauth.config import Settings
from sysauth.logging import get_logger
from sysauth.service.credentials import generate_human_code, hash_secret, normalize_code
from sysauth.service.errors import AuthError, AuthErrorKind
from sysauth.service.permissions import has_privileged_permission
from sysauth.service.tokens import (
    PURPOSE_MFA_SETUP,
    PURPOSE_MFA_VERIFICATION,
    SessionTokenIssuer,
)
from sysauth.storage.models import MfaConfig, Principal
from sysauth.storage.redis_cache import Cache

logger = get_logger(__name__)

BACKUP_CODE_COUNT = 10


class MfaConfigStore(Protocol):
    def get_mfa_config(self, principal_id: str) -> Optional[MfaConfig]: ...

    def save_mfa_config(self, config: MfaConfig) -> None: ...


class MfaDecision(str, Enum):
    PROCEED = "proceed"
    CHALLENGE = "challenge"
    SETUP_REQUIRED = "setup_required"


def decide(mfa_enabled: bool, permissions: List[str], *, passkey: bool = False) -> MfaDecision:
    """Second-factor decision taken after credentials verify.

    A passkey assertion already counts as a phishing-resistant factor, so it
    skips the challenge, but privileged accounts must still enrol.
    """
    if mfa_enabled:
        return MfaDecision.PROCEED if passkey else MfaDecision.CHALLENGE
    if has_privileged_permission(permissions):
        return MfaDecision.SETUP_REQUIRED
    return MfaDecision.PROCEED


@dataclass
class MfaSetup:
    secret: str
    provisioning_uri: str


class MfaGate:
    """TOTP challenge, backup codes and forced enrolment for privileged principals."""

    def __init__(
        self,
        store: MfaConfigStore,
        cache: Cache,
        issuer: SessionTokenIssuer,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.issuer = issuer
        self.max_attempts = settings.mfa_max_attempts
        self.lockout_seconds = settings.mfa_lockout_seconds
        self.token_ttl_seconds = settings.mfa_token_ttl_minutes * 60
        self.issuer_name = settings.mfa_issuer_name

    # -- decision ----------------------------------------------------------

    def evaluate(
        self, principal: Principal, permissions: List[str], *, passkey: bool = False
    ) -> tuple[MfaDecision, Optional[str]]:
        decision = decide(principal.mfa_enabled, permissions, passkey=passkey)
        if decision == MfaDecision.CHALLENGE:
            return decision, self.issuer.issue_purpose_token(
                principal.id, PURPOSE_MFA_VERIFICATION
            )
        if decision == MfaDecision.SETUP_REQUIRED:
            return decision, self.issuer.issue_purpose_token(principal.id, PURPOSE_MFA_SETUP)
        return decision, None

    # -- single-use challenge tokens ----------------------------------------

    @staticmethod
    def _used_key(jti: str) -> str:
        return f"mfa:token-used:{jti}"

    async def resolve_token(self, token: str, purpose: str) -> Optional[Dict[str, Any]]:
        payload = self.issuer.decode_purpose_token(token, purpose)
        if payload is None:
            return None
        jti = payload.get("jti")
        if jti and await self.cache.exists(self._used_key(jti)):
            logger.warning("mfa_token_replayed", principal_id=payload.get("sub"))
            return None
        return payload

    async def consume_token(self, payload: Dict[str, Any]) -> None:
        jti = payload.get("jti")
        if jti:
            await self.cache.set(self._used_key(jti), "1", self.token_ttl_seconds)

    # -- verification ------------------------------------------------------

    @staticmethod
    def _attempts_key(principal_id: str) -> str:
        return f"mfa:attempts:{principal_id}"

    @staticmethod
    def _lockout_key(principal_id: str) -> str:
        return f"mfa:lockout:{principal_id}"

    def _verify_totp(self, secret: str, code: str) -> bool:
        code = code.strip().replace(" ", "")
        if not code.isdigit() or len(code) != 6:
            return False
        return pyotp.TOTP(secret).verify(code, valid_window=1)

    def _consume_backup_code(self, config: MfaConfig, code: str) -> bool:
        digest = hash_secret(normalize_code(code))
        if digest not in config.backup_code_hashes:
            return False
        config.backup_code_hashes.remove(digest)
        self.store.save_mfa_config(config)
        logger.info(
            "mfa_backup_code_used",
            principal_id=config.principal_id,
            remaining=len(config.backup_code_hashes),
        )
        return True

    async def verify_code(self, principal_id: str, code: str) -> Optional[AuthError]:
        """Check a TOTP or backup code; ``None`` means verified."""
        if await self.cache.exists(self._lockout_key(principal_id)):
            logger.warning("mfa_locked_out", principal_id=principal_id)
            return AuthError.too_many_attempts(self.lockout_seconds)

        config = self.store.get_mfa_config(principal_id)
        if config is None or not config.enabled:
            return AuthError(AuthErrorKind.MFA_CODE_INVALID, "invalid verification code")

        if self._verify_totp(config.secret, code) or self._consume_backup_code(config, code):
            await self.cache.remove(self._attempts_key(principal_id))
            return None

        attempts = await self.cache.increment(
            self._attempts_key(principal_id), 1, self.lockout_seconds
        )
        if attempts >= self.max_attempts:
            await self.cache.set(self._lockout_key(principal_id), "1", self.lockout_seconds)
            await self.cache.remove(self._attempts_key(principal_id))
            logger.warning(
                "mfa_lockout_triggered", principal_id=principal_id, attempts=attempts
            )
            return AuthError.too_many_attempts(self.lockout_seconds)
        logger.info("mfa_code_rejected", principal_id=principal_id, attempts=attempts)
        return AuthError(AuthErrorKind.MFA_CODE_INVALID, "invalid verification code")

    # -- enrolment ---------------------------------------------------------

    def begin_setup(self, principal: Principal) -> MfaSetup:
        existing = self.store.get_mfa_config(principal.id)
        if existing is not None and not existing.enabled:
            secret = existing.secret
        else:
            secret = pyotp.random_base32()
            self.store.save_mfa_config(MfaConfig(principal_id=principal.id, secret=secret))
        uri = pyotp.TOTP(secret).provisioning_uri(
            name=principal.email, issuer_name=self.issuer_name
        )
        return MfaSetup(secret=secret, provisioning_uri=uri)

    async def confirm_setup(
        self, principal: Principal, code: str
    ) -> Union[List[str], AuthError]:
        """Enable MFA once the first TOTP verifies; returns plaintext backup codes."""
        config = self.store.get_mfa_config(principal.id)
        if config is None:
            return AuthError(AuthErrorKind.MFA_CODE_INVALID, "MFA setup was not started")
        if config.enabled:
            return AuthError(AuthErrorKind.MFA_CODE_INVALID, "MFA is already enabled")
        if not self._verify_totp(config.secret, code):
            return AuthError(AuthErrorKind.MFA_CODE_INVALID, "invalid verification code")
        backup_codes = [generate_human_code() for _ in range(BACKUP_CODE_COUNT)]
        config.enabled = True
        config.backup_code_hashes = [hash_secret(normalize_code(c)) for c in backup_codes]
        self.store.save_mfa_config(config)
        logger.info("mfa_enabled", principal_id=principal.id)
        return backup_codes
