from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sysauth.service.errors import AuthErrorKind, error_code_for

# Generic envelope codes plus every AuthErrorKind code
_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
    }
    | {error_code_for(kind) for kind in AuthErrorKind}
)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"Invalid error code '{value}'")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _ClientSignals(BaseModel):
    """Device signals every sign-in request may carry."""

    device_id: Optional[str] = Field(default=None, max_length=128)
    fingerprint: Optional[str] = Field(default=None, max_length=256)
    remember_me: bool = False
    captcha_token: Optional[str] = Field(default=None, max_length=4096)


class LoginRequest(_ClientSignals):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class MagicLinkRequest(BaseModel):
    email: str
    captcha_token: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("email")
    @classmethod
    def _validate_magic_link_email(cls, value: str) -> str:
        return _validate_email(value)


class MagicLinkLoginRequest(_ClientSignals):
    token: str = Field(..., min_length=1, max_length=512)


class PasskeyLoginRequest(_ClientSignals):
    challenge_id: str = Field(..., max_length=128)
    assertion: Dict[str, Any]


class MfaVerifyRequest(_ClientSignals):
    mfa_token: str = Field(..., max_length=4096)
    code: str = Field(..., min_length=1, max_length=16)


class MfaSetupRequest(BaseModel):
    setup_token: str = Field(..., max_length=4096)


class MfaConfirmRequest(_ClientSignals):
    setup_token: str = Field(..., max_length=4096)
    code: str = Field(..., min_length=1, max_length=16)


class ApprovalTokenRequest(BaseModel):
    approval_token: str = Field(..., min_length=1, max_length=512)


class ResendApprovalRequest(ApprovalTokenRequest):
    captcha_token: Optional[str] = Field(default=None, max_length=4096)


class ApproveByCodeRequest(ApprovalTokenRequest):
    code: str = Field(..., min_length=1, max_length=16)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class PermissionsUpdateRequest(BaseModel):
    permissions: List[str] = Field(default_factory=list, max_length=64)


class DeviceResponse(BaseModel):
    session_id: str
    device_id: str
    status: str
    display_name: str
    device_type: str
    ip_address: Optional[str] = None
    location: Optional[str] = None
    risk_score: int = 0
    risk_factors: List[str] = Field(default_factory=list)
    trusted_at: Optional[str] = None
    last_used_at: Optional[str] = None
