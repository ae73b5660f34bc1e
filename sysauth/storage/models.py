from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Principal:
    """A system-level user account."""

    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    password_hash: Optional[str] = None
    is_active: bool = True
    is_anonymized: bool = False
    locked_until: Optional[datetime] = None
    failed_login_attempts: int = 0
    mfa_enabled: bool = False
    preferred_language: str = "en"
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.email

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())

    @classmethod
    def new(
        cls,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        password_hash: Optional[str] = None,
        preferred_language: str = "en",
    ) -> "Principal":
        return cls(
            id=new_id(),
            email=email.strip().lower(),
            first_name=first_name,
            last_name=last_name,
            password_hash=password_hash,
            preferred_language=preferred_language,
        )


class DeviceStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    TRUSTED = "trusted"
    REVOKED = "revoked"


@dataclass
class GeoLocation:
    country: Optional[str] = None
    country_code: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def display(self) -> Optional[str]:
        parts = [part for part in (self.city, self.country) if part]
        return ", ".join(parts) or None


@dataclass
class DeviceInfo:
    browser: Optional[str] = None
    browser_version: Optional[str] = None
    operating_system: Optional[str] = None
    os_version: Optional[str] = None
    device_type: str = "Unknown"

    @property
    def display_name(self) -> str:
        browser = self.browser or "Unknown browser"
        if self.operating_system:
            return f"{browser} on {self.operating_system}"
        return browser


@dataclass
class Device:
    """A (principal, client device id, fingerprint) tuple with a trust lifecycle.

    The row doubles as the session: its id is the session id carried in access
    tokens and used for revocation markers. Approval hashes are only populated
    while ``status`` is ``PENDING_APPROVAL``.
    """

    id: str
    principal_id: str
    device_id: str
    fingerprint: Optional[str] = None
    status: DeviceStatus = DeviceStatus.PENDING_APPROVAL
    user_agent: Optional[str] = None
    browser: Optional[str] = None
    browser_version: Optional[str] = None
    operating_system: Optional[str] = None
    os_version: Optional[str] = None
    device_type: str = "Unknown"
    ip_address: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    risk_score: int = 0
    risk_factors: List[str] = field(default_factory=list)
    approval_token_hash: Optional[str] = None
    approval_code_hash: Optional[str] = None
    approval_attempts: int = 0
    approval_expires_at: Optional[datetime] = None
    remember_me: bool = False
    trusted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @property
    def display_name(self) -> str:
        return DeviceInfo(
            browser=self.browser, operating_system=self.operating_system
        ).display_name

    @property
    def location(self) -> GeoLocation:
        return GeoLocation(
            country=self.country,
            country_code=self.country_code,
            city=self.city,
            latitude=self.latitude,
            longitude=self.longitude,
        )

    @property
    def is_pending(self) -> bool:
        return self.status == DeviceStatus.PENDING_APPROVAL

    @property
    def is_trusted(self) -> bool:
        return self.status == DeviceStatus.TRUSTED

    def is_approval_expired(self, now: Optional[datetime] = None) -> bool:
        if self.approval_expires_at is None:
            return True
        return (now or utcnow()) > self.approval_expires_at

    @classmethod
    def new(
        cls,
        principal_id: str,
        device_id: str,
        *,
        fingerprint: Optional[str] = None,
        user_agent: Optional[str] = None,
        info: Optional[DeviceInfo] = None,
        geo: Optional[GeoLocation] = None,
        ip_address: Optional[str] = None,
    ) -> "Device":
        info = info or DeviceInfo()
        geo = geo or GeoLocation()
        return cls(
            id=new_id(),
            principal_id=principal_id,
            device_id=device_id,
            fingerprint=fingerprint,
            user_agent=user_agent,
            browser=info.browser,
            browser_version=info.browser_version,
            operating_system=info.operating_system,
            os_version=info.os_version,
            device_type=info.device_type,
            ip_address=ip_address,
            country=geo.country,
            country_code=geo.country_code,
            city=geo.city,
            latitude=geo.latitude,
            longitude=geo.longitude,
        )


@dataclass
class RefreshToken:
    id: str
    principal_id: str
    token_hash: str
    expires_at: datetime
    remember_me: bool = False
    device_id: Optional[str] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and self.expires_at > (now or utcnow())


@dataclass
class LoginPattern:
    principal_id: str
    typical_countries: List[str] = field(default_factory=list)
    typical_cities: List[str] = field(default_factory=list)
    typical_hours: List[int] = field(default_factory=list)
    device_types: List[str] = field(default_factory=list)
    last_ip: Optional[str] = None
    last_country: Optional[str] = None
    last_city: Optional[str] = None
    last_latitude: Optional[float] = None
    last_longitude: Optional[float] = None
    last_login_at: Optional[datetime] = None


@dataclass
class MfaConfig:
    principal_id: str
    secret: str
    enabled: bool = False
    backup_code_hashes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MagicLinkToken:
    id: str
    principal_id: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.used_at is None and (now or utcnow()) <= self.expires_at


@dataclass
class Passkey:
    id: str
    principal_id: str
    credential_id: str
    public_key: str
    sign_count: int = 0
    name: str = "Passkey"
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditEntry:
    id: str
    action: str
    actor_id: Optional[str] = None
    target_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    details: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
