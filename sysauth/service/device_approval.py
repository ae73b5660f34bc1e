from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Union

from sysauth.config import Settings
from sysauth.logging import get_logger
from sysauth.service.credentials import (
    generate_human_code,
    generate_url_token,
    hash_secret,
    normalize_code,
    secret_matches,
)
from sysauth.service.device_trust import RiskAssessment
from sysauth.service.errors import AuthError, AuthErrorKind
from sysauth.service.reauth import ForceReauthCoordinator
from sysauth.service.tokens import SessionTokenIssuer
from sysauth.service.transitions import (
    ApprovalExpired,
    ApprovalOpened,
    ApprovalReissued,
    Approved,
    CodeRejected,
    Denied,
    DeviceEvent,
    Effect,
    RevokedByAdmin,
    Transition,
    apply_device_event,
)
from sysauth.storage.errors import ConstraintViolation
from sysauth.storage.models import Device, DeviceInfo, DeviceStatus, GeoLocation, utcnow
from sysauth.storage.redis_cache import Cache

logger = get_logger(__name__)

_MAX_TOKEN_RETRIES = 3


class DeviceStore(Protocol):
    def add_device(self, device: Device) -> Device: ...

    def get_device(self, device_row_id: str) -> Optional[Device]: ...

    def list_devices(
        self, principal_id: str, status: Optional[DeviceStatus] = None
    ) -> List[Device]: ...

    def find_device_by_approval_hash(self, token_hash: str) -> Optional[Device]: ...

    def update_device(self, device: Device, *, expected_version: int) -> bool: ...


@dataclass
class OpenedApproval:
    """A pending device plus the plaintext credentials, handed out exactly once."""

    device: Device
    approval_token: str
    approval_code: str


def _conflict() -> AuthError:
    return AuthError(
        AuthErrorKind.APPROVAL_CONFLICT,
        "the device approval was changed by another request; please retry",
    )


class DeviceApprovalWorkflow:
    """Lifecycle of a device row while it waits for its owner's approval.

    Only SHA-256 hashes of the approval token and code are persisted. Every
    write is a compare-and-swap on ``Device.version`` so concurrent approve,
    resend and deny calls cannot all succeed against the same credentials.
    Expiry is enforced lazily when a token is presented.
    """

    def __init__(
        self,
        store: DeviceStore,
        cache: Cache,
        reauth: ForceReauthCoordinator,
        issuer: SessionTokenIssuer,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.reauth = reauth
        self.issuer = issuer
        self.expiry_minutes = settings.device_approval_expiry_minutes
        self.max_attempts = settings.device_approval_max_attempts
        self.resend_cooldown_seconds = settings.device_approval_resend_cooldown_seconds
        self._clock = clock or utcnow

    @staticmethod
    def _denied_key(token_hash: str) -> str:
        return f"device:denied:{token_hash}"

    def _new_credentials(self, own_row_id: Optional[str]) -> tuple[str, str, str, str]:
        for attempt in range(_MAX_TOKEN_RETRIES):
            token = generate_url_token(32)
            token_hash = hash_secret(token)
            clash = self.store.find_device_by_approval_hash(token_hash)
            if clash is not None and clash.id != own_row_id:
                logger.warning("device_approval_token_collision", attempt=attempt + 1)
                continue
            code = generate_human_code()
            return token, code, token_hash, hash_secret(normalize_code(code))
        raise RuntimeError("could not generate a unique device approval token")

    async def _commit(
        self, device: Device, event: DeviceEvent
    ) -> Union[Transition[Device], AuthError]:
        transition = apply_device_event(device, event)
        try:
            written = self.store.update_device(transition.state, expected_version=device.version)
        except ConstraintViolation as exc:
            logger.warning("device_write_rejected", session_id=device.id, reason=exc.message)
            return _conflict()
        if not written:
            return _conflict()
        await self._apply_effects(transition.state, transition.effects)
        return transition

    async def _apply_effects(self, device: Device, effects) -> None:
        await self.reauth.apply(device.id, effects)
        if Effect.REVOKE_REFRESH_TOKENS in effects:
            self.issuer.revoke_for_device(device.id)

    def _existing_row(self, principal_id: str, device_id: str) -> Optional[Device]:
        for device in self.store.list_devices(principal_id):
            if device.device_id == device_id:
                return device
        return None

    # -- open --------------------------------------------------------------

    async def open(
        self,
        principal_id: str,
        device_id: str,
        *,
        fingerprint: Optional[str],
        user_agent: Optional[str],
        info: DeviceInfo,
        geo: GeoLocation,
        ip_address: Optional[str],
        risk: RiskAssessment,
        remember_me: bool = False,
        existing: Optional[Device] = None,
    ) -> Union[OpenedApproval, AuthError]:
        """Put a device row into PendingApproval with fresh credentials.

        A row already known for ``(principal_id, device_id)`` is reused, whether
        it was pending, revoked or (when demoted by the spoofing check) trusted.
        """
        now = self._clock()
        row = existing or self._existing_row(principal_id, device_id)
        token, code, token_hash, code_hash = self._new_credentials(row.id if row else None)
        event = ApprovalOpened(
            token_hash=token_hash,
            code_hash=code_hash,
            expires_at=now + timedelta(minutes=self.expiry_minutes),
            risk_score=risk.score,
            risk_factors=list(risk.factors),
            remember_me=remember_me,
            at=now,
        )

        if row is None:
            fresh = Device.new(
                principal_id,
                device_id,
                fingerprint=fingerprint,
                user_agent=user_agent,
                info=info,
                geo=geo,
                ip_address=ip_address,
            )
            fresh.created_at = now
            try:
                pending = self.store.add_device(apply_device_event(fresh, event).state)
            except ConstraintViolation:
                # another login registered this device id first
                logger.warning(
                    "device_approval_open_raced", principal_id=principal_id, device_id=device_id
                )
                return _conflict()
        else:
            refreshed = replace(
                row,
                fingerprint=fingerprint or row.fingerprint,
                user_agent=user_agent or row.user_agent,
                browser=info.browser,
                browser_version=info.browser_version,
                operating_system=info.operating_system,
                os_version=info.os_version,
                device_type=info.device_type,
                ip_address=ip_address or row.ip_address,
                country=geo.country,
                country_code=geo.country_code,
                city=geo.city,
                latitude=geo.latitude,
                longitude=geo.longitude,
                risk_factors=list(row.risk_factors),
            )
            result = await self._commit(refreshed, event)
            if isinstance(result, AuthError):
                return result
            pending = result.state

        logger.info(
            "device_approval_opened",
            principal_id=principal_id,
            session_id=pending.id,
            reused_row=row is not None,
            risk_score=risk.score,
        )
        return OpenedApproval(device=pending, approval_token=token, approval_code=code)

    # -- validation --------------------------------------------------------

    async def validate_token(self, token: str) -> Union[Device, AuthError]:
        """Resolve a pending device from its approval token, expiring it lazily."""
        if not token:
            return AuthError(AuthErrorKind.APPROVAL_INVALID, "approval token is invalid")
        token_hash = hash_secret(token)
        if await self.cache.exists(self._denied_key(token_hash)):
            return AuthError(AuthErrorKind.APPROVAL_DENIED, "this sign-in was denied")
        device = self.store.find_device_by_approval_hash(token_hash)
        if device is None or device.status != DeviceStatus.PENDING_APPROVAL:
            return AuthError(AuthErrorKind.APPROVAL_INVALID, "approval token is invalid")
        if device.is_approval_expired(self._clock()):
            result = await self._commit(device, ApprovalExpired(at=self._clock()))
            if isinstance(result, AuthError):
                return result
            logger.info("device_approval_expired", session_id=device.id)
            return AuthError(AuthErrorKind.APPROVAL_EXPIRED, "approval request has expired")
        return device

    async def _approve(self, device: Device) -> Union[Device, AuthError]:
        result = await self._commit(device, Approved(at=self._clock()))
        if isinstance(result, AuthError):
            return result
        logger.info(
            "device_approved", principal_id=device.principal_id, session_id=device.id
        )
        return result.state

    async def approve_by_code(self, token: str, code: str) -> Union[Device, AuthError]:
        device = await self.validate_token(token)
        if isinstance(device, AuthError):
            return device
        if device.approval_attempts >= self.max_attempts:
            return AuthError(
                AuthErrorKind.APPROVAL_MAX_ATTEMPTS,
                "too many invalid codes; request a new approval email",
            )
        if not secret_matches(normalize_code(code or ""), device.approval_code_hash):
            result = await self._commit(device, CodeRejected(at=self._clock()))
            if isinstance(result, AuthError):
                return result
            attempts = result.state.approval_attempts
            if attempts >= self.max_attempts:
                logger.warning(
                    "device_approval_max_attempts", session_id=device.id, attempts=attempts
                )
                return AuthError(
                    AuthErrorKind.APPROVAL_MAX_ATTEMPTS,
                    "too many invalid codes; request a new approval email",
                )
            remaining = self.max_attempts - attempts
            logger.warning(
                "device_approval_code_invalid", session_id=device.id, remaining=remaining
            )
            return AuthError.approval_code_invalid(remaining)
        return await self._approve(device)

    async def approve_by_link(self, token: str) -> Union[Device, AuthError]:
        device = await self.validate_token(token)
        if isinstance(device, AuthError):
            return device
        return await self._approve(device)

    async def deny(self, token: str) -> Union[Device, AuthError]:
        device = await self.validate_token(token)
        if isinstance(device, AuthError):
            return device
        result = await self._commit(device, Denied(at=self._clock()))
        if isinstance(result, AuthError):
            return result
        await self.cache.set(
            self._denied_key(hash_secret(token)), "1", self.expiry_minutes * 60
        )
        logger.warning(
            "device_denied", principal_id=device.principal_id, session_id=device.id
        )
        return result.state

    async def resend(self, token: str) -> Union[OpenedApproval, AuthError]:
        """Reissue credentials for a pending device, honouring the cooldown.

        The previous token and code stop working immediately; the stored risk
        score and factors are kept as they were.
        """
        device = await self.validate_token(token)
        if isinstance(device, AuthError):
            return device
        now = self._clock()
        elapsed = (now - device.updated_at).total_seconds()
        if elapsed < self.resend_cooldown_seconds:
            remaining = math.ceil(self.resend_cooldown_seconds - elapsed)
            return AuthError.resend_cooldown(remaining)
        new_token, code, token_hash, code_hash = self._new_credentials(device.id)
        result = await self._commit(
            device,
            ApprovalReissued(
                token_hash=token_hash,
                code_hash=code_hash,
                expires_at=now + timedelta(minutes=self.expiry_minutes),
                at=now,
            ),
        )
        if isinstance(result, AuthError):
            return result
        logger.info("device_approval_resent", session_id=device.id)
        return OpenedApproval(
            device=result.state, approval_token=new_token, approval_code=code
        )

    async def trust_directly(
        self,
        principal_id: str,
        device_id: str,
        *,
        fingerprint: Optional[str],
        user_agent: Optional[str],
        info: DeviceInfo,
        geo: GeoLocation,
        ip_address: Optional[str],
        risk: RiskAssessment,
        remember_me: bool = False,
        existing: Optional[Device] = None,
    ) -> Union[Device, AuthError]:
        """Trust a device without an email round trip (strong-auth logins).

        Runs the normal open and approve transitions back to back so the row
        ends up exactly as a manually approved one would.
        """
        opened = await self.open(
            principal_id,
            device_id,
            fingerprint=fingerprint,
            user_agent=user_agent,
            info=info,
            geo=geo,
            ip_address=ip_address,
            risk=risk,
            remember_me=remember_me,
            existing=existing,
        )
        if isinstance(opened, AuthError):
            return opened
        return await self._approve(opened.device)

    # -- admin -------------------------------------------------------------

    async def revoke(self, device: Device) -> Union[Device, AuthError]:
        result = await self._commit(device, RevokedByAdmin(at=self._clock()))
        if isinstance(result, AuthError):
            return result
        return result.state
