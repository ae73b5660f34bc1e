from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class AuthErrorKind(str, Enum):
    """Closed taxonomy of expected authentication and approval failures."""

    INVALID_CREDENTIALS = "invalid_credentials"
    USER_INACTIVE = "user_inactive"
    ACCOUNT_LOCKED = "account_locked"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    MFA_REQUIRED = "mfa_required"
    MFA_SETUP_REQUIRED = "mfa_setup_required"
    MFA_CODE_INVALID = "mfa_code_invalid"
    DEVICE_APPROVAL_REQUIRED = "device_approval_required"
    APPROVAL_CODE_INVALID = "approval_code_invalid"
    APPROVAL_MAX_ATTEMPTS = "approval_max_attempts"
    APPROVAL_EXPIRED = "approval_expired"
    APPROVAL_INVALID = "approval_invalid"
    APPROVAL_DENIED = "approval_denied"
    APPROVAL_CONFLICT = "approval_conflict"
    RESEND_COOLDOWN = "resend_cooldown"
    FORCE_REAUTH_REQUIRED = "force_reauth_required"
    SESSION_REVOKED = "session_revoked"
    TOKEN_INVALID = "token_invalid"
    MAGIC_LINK_INVALID = "magic_link_invalid"
    PASSKEY_INVALID = "passkey_invalid"
    CAPTCHA_INVALID = "captcha_invalid"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"


# kind -> (stable code, HTTP status)
_KIND_TABLE: Dict[AuthErrorKind, tuple[str, int]] = {
    AuthErrorKind.INVALID_CREDENTIALS: ("AUTH_INVALID_CREDENTIALS", 401),
    AuthErrorKind.USER_INACTIVE: ("AUTH_USER_INACTIVE", 401),
    AuthErrorKind.ACCOUNT_LOCKED: ("AUTH_ACCOUNT_LOCKED", 423),
    AuthErrorKind.TOO_MANY_ATTEMPTS: ("AUTH_TOO_MANY_ATTEMPTS", 429),
    AuthErrorKind.MFA_REQUIRED: ("AUTH_MFA_REQUIRED", 403),
    AuthErrorKind.MFA_SETUP_REQUIRED: ("AUTH_MFA_SETUP_REQUIRED", 403),
    AuthErrorKind.MFA_CODE_INVALID: ("AUTH_MFA_CODE_INVALID", 400),
    AuthErrorKind.DEVICE_APPROVAL_REQUIRED: ("AUTH_DEVICE_APPROVAL_REQUIRED", 403),
    AuthErrorKind.APPROVAL_CODE_INVALID: ("DEVICE_APPROVAL_CODE_INVALID", 400),
    AuthErrorKind.APPROVAL_MAX_ATTEMPTS: ("DEVICE_APPROVAL_MAX_ATTEMPTS", 429),
    AuthErrorKind.APPROVAL_EXPIRED: ("DEVICE_APPROVAL_EXPIRED", 400),
    AuthErrorKind.APPROVAL_INVALID: ("DEVICE_APPROVAL_INVALID", 400),
    AuthErrorKind.APPROVAL_DENIED: ("DEVICE_APPROVAL_DENIED", 403),
    AuthErrorKind.APPROVAL_CONFLICT: ("DEVICE_APPROVAL_CONFLICT", 409),
    AuthErrorKind.RESEND_COOLDOWN: ("DEVICE_APPROVAL_RESEND_COOLDOWN", 429),
    AuthErrorKind.FORCE_REAUTH_REQUIRED: ("AUTH_FORCE_REAUTH", 401),
    AuthErrorKind.SESSION_REVOKED: ("AUTH_SESSION_REVOKED", 401),
    AuthErrorKind.TOKEN_INVALID: ("AUTH_TOKEN_INVALID", 401),
    AuthErrorKind.MAGIC_LINK_INVALID: ("AUTH_MAGIC_LINK_INVALID", 400),
    AuthErrorKind.PASSKEY_INVALID: ("AUTH_PASSKEY_INVALID", 401),
    AuthErrorKind.CAPTCHA_INVALID: ("AUTH_CAPTCHA_INVALID", 400),
    AuthErrorKind.FORBIDDEN: ("AUTH_FORBIDDEN", 403),
    AuthErrorKind.NOT_FOUND: ("NOT_FOUND", 404),
}


@dataclass(frozen=True)
class AuthError:
    """An expected failure returned as a value rather than raised.

    Services hand these back to their callers (``Outcome | AuthError``) so that
    the HTTP layer, not the service, decides how to render them. Exceptions are
    kept for genuinely unexpected faults.
    """

    kind: AuthErrorKind
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def code(self) -> str:
        return _KIND_TABLE[self.kind][0]

    @property
    def status_code(self) -> int:
        return _KIND_TABLE[self.kind][1]

    def details(self) -> Dict[str, Any]:
        """JSON-safe payload for the error envelope."""
        return {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in self.payload.items()
        }

    @classmethod
    def invalid_credentials(cls) -> "AuthError":
        return cls(AuthErrorKind.INVALID_CREDENTIALS, "invalid credentials")

    @classmethod
    def user_inactive(cls) -> "AuthError":
        return cls(AuthErrorKind.USER_INACTIVE, "account is inactive")

    @classmethod
    def account_locked(cls, locked_until: Optional[datetime]) -> "AuthError":
        return cls(
            AuthErrorKind.ACCOUNT_LOCKED,
            "account is temporarily locked",
            {"locked_until": locked_until},
        )

    @classmethod
    def too_many_attempts(cls, retry_after_seconds: int) -> "AuthError":
        return cls(
            AuthErrorKind.TOO_MANY_ATTEMPTS,
            "too many attempts",
            {"retry_after_seconds": retry_after_seconds},
        )

    @classmethod
    def approval_code_invalid(cls, remaining_attempts: int) -> "AuthError":
        return cls(
            AuthErrorKind.APPROVAL_CODE_INVALID,
            "approval code is invalid",
            {"remaining_attempts": remaining_attempts},
        )

    @classmethod
    def resend_cooldown(cls, remaining_seconds: int) -> "AuthError":
        return cls(
            AuthErrorKind.RESEND_COOLDOWN,
            "please wait before requesting a new approval email",
            {"remaining_seconds": remaining_seconds},
        )


def error_code_for(kind: AuthErrorKind) -> str:
    return _KIND_TABLE[kind][0]


def is_error(value: Any) -> bool:
    return isinstance(value, AuthError)


class ServiceError(Exception):
    """Base class for HTTP-boundary exceptions mapped to error envelopes.

    Expected authentication outcomes travel as ``AuthError`` values; these
    exceptions cover malformed requests and missing credentials at the edge.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "AuthError",
    "AuthErrorKind",
    "error_code_for",
    "is_error",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "ServerError",
]
