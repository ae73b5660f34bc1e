"""Results returned by the orchestrator, one type per terminal state of a flow.

A flow returns exactly one of these or an ``AuthError``; the pending outcomes
(``MfaRequired``, ``MfaSetupRequired``, ``DeviceApprovalRequired``) are not
failures in the service but render as 403 errors at the HTTP edge.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sysauth.service.errors import AuthError, AuthErrorKind
from sysauth.service.tokens import IssuedTokens
from sysauth.storage.models import Principal


def principal_payload(principal: Principal, permissions: List[str]) -> Dict[str, Any]:
    return {
        "id": principal.id,
        "email": principal.email,
        "first_name": principal.first_name,
        "last_name": principal.last_name,
        "full_name": principal.full_name,
        "is_active": principal.is_active,
        "mfa_enabled": principal.mfa_enabled,
        "preferred_language": principal.preferred_language,
        "last_login_at": principal.last_login_at.isoformat() if principal.last_login_at else None,
        "permissions": list(permissions),
    }


@dataclass
class SessionIssued:
    principal: Principal
    permissions: List[str]
    tokens: IssuedTokens
    device_id: str
    is_new_device: bool = False
    is_new_location: bool = False
    backup_codes: Optional[List[str]] = None
    kind: str = "session"

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "kind": self.kind,
            "user": principal_payload(self.principal, self.permissions),
            "access_token": self.tokens.access_token,
            "refresh_token": self.tokens.refresh_token,
            "token_type": self.tokens.token_type,
            "expires_at": self.tokens.expires_at.isoformat(),
            "session_id": self.tokens.session_id,
            "device_id": self.device_id,
            "is_new_device": self.is_new_device,
            "is_new_location": self.is_new_location,
        }
        if self.backup_codes is not None:
            payload["backup_codes"] = list(self.backup_codes)
        return payload


@dataclass
class MfaRequired:
    mfa_token: str
    kind: str = "mfa_required"

    def to_error(self) -> AuthError:
        return AuthError(
            AuthErrorKind.MFA_REQUIRED,
            "multi-factor verification required",
            {"mfa_token": self.mfa_token},
        )


@dataclass
class MfaSetupRequired:
    setup_token: str
    kind: str = "mfa_setup_required"

    def to_error(self) -> AuthError:
        return AuthError(
            AuthErrorKind.MFA_SETUP_REQUIRED,
            "multi-factor enrolment required for privileged accounts",
            {"setup_token": self.setup_token},
        )


@dataclass
class DeviceApprovalRequired:
    approval_token: str
    session_id: str
    device_id: str
    risk_score: int
    risk_level: str
    risk_factors: List[str] = field(default_factory=list)
    backup_codes: Optional[List[str]] = None
    kind: str = "device_approval_required"

    def to_error(self) -> AuthError:
        payload: Dict[str, Any] = {
            "approval_token": self.approval_token,
            "session_id": self.session_id,
            "device_id": self.device_id,
            "risk_score": self.risk_score,
            "risk_level": self.risk_level,
            "risk_factors": list(self.risk_factors),
        }
        if self.backup_codes is not None:
            payload["backup_codes"] = list(self.backup_codes)
        return AuthError(
            AuthErrorKind.DEVICE_APPROVAL_REQUIRED,
            "this device must be approved before signing in",
            payload,
        )


@dataclass
class DeviceApproved:
    session_id: str
    kind: str = "device_approved"

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind, "session_id": self.session_id}


@dataclass
class DeviceDenied:
    session_id: str
    kind: str = "device_denied"

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind, "session_id": self.session_id}


@dataclass
class ApprovalResent:
    approval_token: str
    session_id: str
    expires_at: str
    kind: str = "approval_resent"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "approval_token": self.approval_token,
            "session_id": self.session_id,
            "expires_at": self.expires_at,
        }


@dataclass
class MfaSetupStarted:
    secret: str
    provisioning_uri: str
    kind: str = "mfa_setup_started"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "secret": self.secret,
            "provisioning_uri": self.provisioning_uri,
        }


@dataclass
class PasskeyChallenge:
    challenge_id: str
    challenge: str
    timeout_seconds: int
    kind: str = "passkey_challenge"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "challenge_id": self.challenge_id,
            "challenge": self.challenge,
            "timeout_seconds": self.timeout_seconds,
        }


@dataclass
class Accepted:
    """Acknowledgement for fire-and-forget requests (magic link, logout)."""

    kind: str = "accepted"

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind}


@dataclass
class AuthContext:
    principal_id: str
    email: str
    permissions: List[str]
    session_id: str
    user_type: str = "system"

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": "auth_context",
            "principal_id": self.principal_id,
            "email": self.email,
            "permissions": list(self.permissions),
            "session_id": self.session_id,
            "user_type": self.user_type,
        }


PENDING_OUTCOMES = (MfaRequired, MfaSetupRequired, DeviceApprovalRequired)
