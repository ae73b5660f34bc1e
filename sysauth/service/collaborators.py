from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from sysauth.storage.models import DeviceInfo, GeoLocation


class CredentialHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, hashed: Optional[str]) -> bool: ...


class Notifier(Protocol):
    async def send_device_approval_required(
        self,
        email: str,
        name: str,
        approval_token: str,
        approval_code: str,
        device_meta: Dict[str, Any],
        risk_score: int,
        language: str,
    ) -> None: ...

    async def send(
        self,
        to: str,
        subject: str,
        template: str,
        variables: Dict[str, Any],
        language: str,
    ) -> None: ...


class CaptchaVerifier(Protocol):
    async def validate_required(
        self, token: Optional[str], action: str, remote_ip: Optional[str]
    ) -> bool: ...


class AuditLog(Protocol):
    async def log_with_context(
        self,
        action: str,
        actor_id: Optional[str],
        target_id: Optional[str],
        entity_type: Optional[str],
        entity_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> None: ...


class GeoLocator(Protocol):
    def locate(self, ip_address: Optional[str]) -> GeoLocation: ...


class DeviceInfoParser(Protocol):
    def parse(self, user_agent: Optional[str]) -> DeviceInfo: ...


@dataclass
class VerifiedAssertion:
    credential_id: str
    sign_count: int


class PasskeyVerifier(Protocol):
    """Verifies a WebAuthn assertion against a stored public key."""

    def verify_assertion(
        self,
        assertion: Dict[str, Any],
        *,
        challenge: str,
        public_key: str,
        stored_sign_count: int,
    ) -> Optional[VerifiedAssertion]: ...


class RejectingPasskeyVerifier:
    """Default verifier for deployments without passkey support configured."""

    def verify_assertion(
        self,
        assertion: Dict[str, Any],
        *,
        challenge: str,
        public_key: str,
        stored_sign_count: int,
    ) -> Optional[VerifiedAssertion]:
        return None


__all__: List[str] = [
    "AuditLog",
    "CaptchaVerifier",
    "CredentialHasher",
    "DeviceInfoParser",
    "GeoLocator",
    "Notifier",
    "PasskeyVerifier",
    "RejectingPasskeyVerifier",
    "VerifiedAssertion",
]
