"""Pure state transitions for devices and principals.

Each ``apply_*`` function takes the current record and an event and returns a
``Transition`` holding the new record plus the side effects the caller must
perform (cache markers, refresh token revocation). Nothing here touches a
store, the cache or the network.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Generic, List, Optional, Tuple, TypeVar, Union

from sysauth.storage.models import Device, DeviceStatus, GeoLocation, Principal

T = TypeVar("T")


class Effect(str, Enum):
    SET_FORCE_REAUTH = "set_force_reauth"
    CLEAR_FORCE_REAUTH = "clear_force_reauth"
    MARK_SESSION_REVOKED = "mark_session_revoked"
    CLEAR_SESSION_REVOKED = "clear_session_revoked"
    REVOKE_REFRESH_TOKENS = "revoke_refresh_tokens"
    # principal-scoped
    INVALIDATE_PERMISSIONS = "invalidate_permissions"
    FORCE_REAUTH_ALL_SESSIONS = "force_reauth_all_sessions"
    REVOKE_ALL_SESSIONS = "revoke_all_sessions"
    RESET_LOCKOUT = "reset_lockout"


@dataclass(frozen=True)
class Transition(Generic[T]):
    state: T
    effects: Tuple[Effect, ...] = ()


class InvalidTransition(ValueError):
    def __init__(self, status: str, event: object):
        super().__init__(f"{type(event).__name__} is not valid from {status}")
        self.status = status
        self.event = event


# -- device events ----------------------------------------------------------


@dataclass(frozen=True)
class ApprovalOpened:
    token_hash: str
    code_hash: str
    expires_at: datetime
    risk_score: int
    risk_factors: List[str]
    remember_me: bool
    at: datetime


@dataclass(frozen=True)
class ApprovalReissued:
    token_hash: str
    code_hash: str
    expires_at: datetime
    at: datetime


@dataclass(frozen=True)
class CodeRejected:
    at: datetime


@dataclass(frozen=True)
class Approved:
    at: datetime


@dataclass(frozen=True)
class Denied:
    at: datetime


@dataclass(frozen=True)
class ApprovalExpired:
    at: datetime


@dataclass(frozen=True)
class RevokedByAdmin:
    at: datetime


@dataclass(frozen=True)
class DeviceUsed:
    ip_address: Optional[str]
    geo: GeoLocation
    at: datetime


DeviceEvent = Union[
    ApprovalOpened,
    ApprovalReissued,
    CodeRejected,
    Approved,
    Denied,
    ApprovalExpired,
    RevokedByAdmin,
    DeviceUsed,
]


def _cleared(device: Device, **changes) -> Device:
    return replace(
        device,
        approval_token_hash=None,
        approval_code_hash=None,
        approval_attempts=0,
        approval_expires_at=None,
        risk_factors=list(device.risk_factors),
        **changes,
    )


def _revoke(device: Device, at: datetime) -> Transition[Device]:
    if device.status == DeviceStatus.REVOKED:
        return Transition(_cleared(device))
    return Transition(
        _cleared(device, status=DeviceStatus.REVOKED, revoked_at=at, updated_at=at),
        (Effect.MARK_SESSION_REVOKED, Effect.REVOKE_REFRESH_TOKENS),
    )


def apply_device_event(device: Device, event: DeviceEvent) -> Transition[Device]:
    status = device.status

    if isinstance(event, ApprovalOpened):
        opened = replace(
            device,
            status=DeviceStatus.PENDING_APPROVAL,
            approval_token_hash=event.token_hash,
            approval_code_hash=event.code_hash,
            approval_attempts=0,
            approval_expires_at=event.expires_at,
            risk_score=event.risk_score,
            risk_factors=list(event.risk_factors),
            remember_me=event.remember_me,
            trusted_at=None,
            updated_at=event.at,
        )
        if status == DeviceStatus.TRUSTED:
            # demotion: sessions already minted on this row stop working
            return Transition(opened, (Effect.SET_FORCE_REAUTH, Effect.REVOKE_REFRESH_TOKENS))
        return Transition(opened)

    if isinstance(event, ApprovalReissued):
        if status != DeviceStatus.PENDING_APPROVAL:
            raise InvalidTransition(status.value, event)
        return Transition(
            replace(
                device,
                approval_token_hash=event.token_hash,
                approval_code_hash=event.code_hash,
                approval_attempts=0,
                approval_expires_at=event.expires_at,
                risk_factors=list(device.risk_factors),
                updated_at=event.at,
            )
        )

    if isinstance(event, CodeRejected):
        if status != DeviceStatus.PENDING_APPROVAL:
            raise InvalidTransition(status.value, event)
        return Transition(
            replace(
                device,
                approval_attempts=device.approval_attempts + 1,
                risk_factors=list(device.risk_factors),
            )
        )

    if isinstance(event, Approved):
        if status != DeviceStatus.PENDING_APPROVAL:
            raise InvalidTransition(status.value, event)
        return Transition(
            _cleared(
                device,
                status=DeviceStatus.TRUSTED,
                trusted_at=event.at,
                revoked_at=None,
                last_used_at=event.at,
                updated_at=event.at,
            ),
            (Effect.CLEAR_FORCE_REAUTH, Effect.CLEAR_SESSION_REVOKED),
        )

    if isinstance(event, (Denied, ApprovalExpired)):
        if status != DeviceStatus.PENDING_APPROVAL:
            raise InvalidTransition(status.value, event)
        return _revoke(device, event.at)

    if isinstance(event, RevokedByAdmin):
        return _revoke(device, event.at)

    if isinstance(event, DeviceUsed):
        if status != DeviceStatus.TRUSTED:
            raise InvalidTransition(status.value, event)
        geo = event.geo
        return Transition(
            replace(
                device,
                ip_address=event.ip_address or device.ip_address,
                country=geo.country or device.country,
                country_code=geo.country_code or device.country_code,
                city=geo.city or device.city,
                latitude=geo.latitude if geo.latitude is not None else device.latitude,
                longitude=geo.longitude if geo.longitude is not None else device.longitude,
                risk_factors=list(device.risk_factors),
                last_used_at=event.at,
                updated_at=event.at,
            ),
            (Effect.CLEAR_FORCE_REAUTH, Effect.CLEAR_SESSION_REVOKED),
        )

    raise TypeError(f"unknown device event {event!r}")


# -- principal events -------------------------------------------------------


@dataclass(frozen=True)
class LoginFailed:
    locked_until: Optional[datetime] = None


@dataclass(frozen=True)
class CredentialsVerified:
    pass


@dataclass(frozen=True)
class LoginSucceeded:
    at: datetime


@dataclass(frozen=True)
class PermissionsChanged:
    pass


@dataclass(frozen=True)
class Deactivated:
    at: datetime


@dataclass(frozen=True)
class Unlocked:
    pass


@dataclass(frozen=True)
class MfaEnrolled:
    pass


PrincipalEvent = Union[
    LoginFailed,
    CredentialsVerified,
    LoginSucceeded,
    PermissionsChanged,
    Deactivated,
    Unlocked,
    MfaEnrolled,
]


def apply_principal_event(
    principal: Principal, event: PrincipalEvent
) -> Transition[Principal]:
    if isinstance(event, LoginFailed):
        locked_until = principal.locked_until
        if event.locked_until is not None and (
            locked_until is None or event.locked_until > locked_until
        ):
            locked_until = event.locked_until
        return Transition(
            replace(
                principal,
                failed_login_attempts=principal.failed_login_attempts + 1,
                locked_until=locked_until,
            )
        )

    if isinstance(event, CredentialsVerified):
        if principal.failed_login_attempts == 0:
            return Transition(principal)
        return Transition(replace(principal, failed_login_attempts=0))

    if isinstance(event, LoginSucceeded):
        return Transition(replace(principal, last_login_at=event.at))

    if isinstance(event, PermissionsChanged):
        return Transition(
            principal,
            (
                Effect.INVALIDATE_PERMISSIONS,
                Effect.FORCE_REAUTH_ALL_SESSIONS,
                Effect.REVOKE_REFRESH_TOKENS,
            ),
        )

    if isinstance(event, Deactivated):
        if not principal.is_active:
            return Transition(principal)
        return Transition(
            replace(principal, is_active=False),
            (
                Effect.REVOKE_ALL_SESSIONS,
                Effect.REVOKE_REFRESH_TOKENS,
                Effect.INVALIDATE_PERMISSIONS,
            ),
        )

    if isinstance(event, Unlocked):
        return Transition(
            replace(principal, locked_until=None, failed_login_attempts=0),
            (Effect.RESET_LOCKOUT,),
        )

    if isinstance(event, MfaEnrolled):
        return Transition(replace(principal, mfa_enabled=True))

    raise TypeError(f"unknown principal event {event!r}")


def approval_expiry(now: datetime, minutes: int) -> datetime:
    return now + timedelta(minutes=minutes)
