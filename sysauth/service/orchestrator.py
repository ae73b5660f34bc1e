from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from sysauth.config import Settings
from sysauth.logging import get_logger
from sysauth.service.audit import AuditAction
from sysauth.service.collaborators import (
    AuditLog,
    CaptchaVerifier,
    CredentialHasher,
    DeviceInfoParser,
    GeoLocator,
    Notifier,
    PasskeyVerifier,
)
from sysauth.service.credentials import generate_url_token
from sysauth.service.device_approval import DeviceApprovalWorkflow, DeviceStore
from sysauth.service.device_trust import DeviceTrustEvaluator, RiskAssessment, TrustStatus
from sysauth.service.errors import AuthError, AuthErrorKind
from sysauth.service.lockout import LockoutGuard, normalize_email
from sysauth.service.magic_link import MagicLinkService
from sysauth.service.mfa import MfaDecision, MfaGate
from sysauth.service.outcomes import (
    Accepted,
    ApprovalResent,
    AuthContext,
    DeviceApprovalRequired,
    DeviceApproved,
    DeviceDenied,
    MfaRequired,
    MfaSetupRequired,
    MfaSetupStarted,
    PasskeyChallenge,
    SessionIssued,
)
from sysauth.service.permissions import PermissionCache
from sysauth.service.principals import commit_principal_event
from sysauth.service.reauth import ForceReauthCoordinator
from sysauth.service.tokens import (
    PURPOSE_MFA_SETUP,
    PURPOSE_MFA_VERIFICATION,
    SessionTokenIssuer,
)
from sysauth.service.transitions import (
    CredentialsVerified,
    DeviceUsed,
    LoginFailed,
    LoginSucceeded,
    MfaEnrolled,
    PrincipalEvent,
    apply_device_event,
)
from sysauth.storage.models import (
    Device,
    DeviceInfo,
    GeoLocation,
    Passkey,
    Principal,
    new_id,
    utcnow,
)
from sysauth.storage.redis_cache import Cache

logger = get_logger(__name__)

LoginOutcome = Union[
    SessionIssued, MfaRequired, MfaSetupRequired, DeviceApprovalRequired, AuthError
]


class PrincipalStore(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def update_principal(self, principal: Principal, *, expected_version: int) -> bool: ...


class PasskeyStore(Protocol):
    def get_passkey_by_credential_id(self, credential_id: str) -> Optional[Passkey]: ...

    def save_passkey(self, passkey: Passkey) -> None: ...


@dataclass
class LoginContext:
    """Request-scoped signals captured at the HTTP edge."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    fingerprint: Optional[str] = None
    remember_me: bool = False
    captcha_token: Optional[str] = None


class AuthOrchestrator:
    """Sequences every sign-in flow through the same gates.

    Order for each entry credential: lockout, credential or assertion check,
    MFA gate, device trust, device approval when untrusted, token issuance,
    then force-reauth clearing and notifications. Expected failures come back
    as ``AuthError`` values. Audit and notification failures are logged and
    never change the outcome.
    """

    def __init__(
        self,
        *,
        principals: PrincipalStore,
        devices: DeviceStore,
        passkeys: PasskeyStore,
        cache: Cache,
        lockout: LockoutGuard,
        mfa: MfaGate,
        trust: DeviceTrustEvaluator,
        approvals: DeviceApprovalWorkflow,
        issuer: SessionTokenIssuer,
        reauth: ForceReauthCoordinator,
        permissions: PermissionCache,
        magic_links: MagicLinkService,
        hasher: CredentialHasher,
        notifier: Notifier,
        captcha: CaptchaVerifier,
        audit: AuditLog,
        geo: GeoLocator,
        device_info: DeviceInfoParser,
        passkey_verifier: PasskeyVerifier,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.principals = principals
        self.devices = devices
        self.passkeys = passkeys
        self.cache = cache
        self.lockout = lockout
        self.mfa = mfa
        self.trust = trust
        self.approvals = approvals
        self.issuer = issuer
        self.reauth = reauth
        self.permissions = permissions
        self.magic_links = magic_links
        self.hasher = hasher
        self.notifier = notifier
        self.captcha = captcha
        self.audit = audit
        self.geo = geo
        self.device_info = device_info
        self.passkey_verifier = passkey_verifier
        self.settings = settings
        self._clock = clock or utcnow

    # -- plumbing ----------------------------------------------------------

    async def _audit(
        self,
        action: str,
        actor_id: Optional[str],
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        target_id: Optional[str] = None,
    ) -> None:
        try:
            await self.audit.log_with_context(
                action, actor_id, target_id, entity_type, entity_id, details
            )
        except Exception as exc:
            logger.error("audit_write_failed", action=action, error=str(exc))

    async def _notify(self, event: str, send: Callable[[], Awaitable[None]]) -> None:
        try:
            await send()
        except Exception as exc:
            logger.error("notification_failed", notification=event, error=str(exc))

    def _save_principal(self, principal: Principal, event: PrincipalEvent) -> Principal:
        return commit_principal_event(self.principals, principal, event).state

    async def _check_captcha(self, ctx: LoginContext, action: str) -> Optional[AuthError]:
        if await self.captcha.validate_required(ctx.captcha_token, action, ctx.ip_address):
            return None
        return AuthError(AuthErrorKind.CAPTCHA_INVALID, "captcha verification failed")

    def _load_active(self, principal_id: str) -> Union[Principal, AuthError]:
        principal = self.principals.get_principal(principal_id)
        if principal is None or principal.is_anonymized:
            return AuthError.invalid_credentials()
        if not principal.is_active:
            return AuthError.user_inactive()
        if principal.is_locked(self._clock()):
            return AuthError.account_locked(principal.locked_until)
        return principal

    # -- password ----------------------------------------------------------

    async def login_password(
        self, email: str, password: str, ctx: LoginContext
    ) -> LoginOutcome:
        email = normalize_email(email)

        if await self.lockout.is_blocked(email):
            locked_until = await self.lockout.locked_until(email)
            await self._audit(
                AuditAction.LOGIN_BLOCKED,
                None,
                details={"email": email, "reason": "temporarily locked", "locked_until": locked_until},
            )
            return AuthError.account_locked(locked_until)

        captcha_error = await self._check_captcha(ctx, "login")
        if captcha_error:
            return captcha_error

        principal = self.principals.get_principal_by_email(email)
        if principal is None or principal.is_anonymized:
            return await self._record_failure(email, None, "principal not found")

        if principal.is_locked(self._clock()):
            await self._audit(
                AuditAction.LOGIN_BLOCKED,
                principal.id,
                "Principal",
                principal.id,
                {"reason": "account locked", "locked_until": principal.locked_until},
            )
            return AuthError.account_locked(principal.locked_until)

        if not self.hasher.verify(password, principal.password_hash):
            return await self._record_failure(email, principal, "invalid password")

        if not principal.is_active:
            await self._audit(
                AuditAction.LOGIN_FAILED,
                principal.id,
                "Principal",
                principal.id,
                {"reason": "inactive"},
            )
            return AuthError.user_inactive()

        await self.lockout.reset(email)
        principal = self._save_principal(principal, CredentialsVerified())
        return await self._after_primary_auth(principal, ctx)

    async def _record_failure(
        self, email: str, principal: Optional[Principal], reason: str
    ) -> AuthError:
        result = await self.lockout.record_failed_attempt(email)
        if principal is not None:
            principal = self._save_principal(
                principal,
                LoginFailed(locked_until=result.locked_until if result.is_locked else None),
            )
        actor_id = principal.id if principal else None
        entity_type = "Principal" if principal else None
        details = {
            "email": email,
            "reason": reason,
            "attempts": result.attempts,
            "is_locked": result.is_locked,
            "locked_until": result.locked_until,
            "lockout_seconds": result.lockout_seconds,
        }
        await self._audit(AuditAction.LOGIN_FAILED, actor_id, entity_type, actor_id, details)
        if not result.is_locked:
            return AuthError.invalid_credentials()

        await self._audit(AuditAction.ACCOUNT_LOCKED, actor_id, entity_type, actor_id, details)
        if principal is not None and result.should_notify:
            locked_principal = principal
            await self._notify(
                "account_locked",
                lambda: self.notifier.send(
                    locked_principal.email,
                    "Your account has been locked",
                    "account_locked",
                    {
                        "name": locked_principal.first_name or locked_principal.email,
                        "attempts": result.attempts,
                        "lockout_minutes": result.lockout_seconds // 60,
                        "locked_until": result.locked_until.strftime("%H:%M UTC"),
                    },
                    locked_principal.preferred_language,
                ),
            )
        return AuthError.account_locked(result.locked_until)

    # -- shared tail -------------------------------------------------------

    async def _after_primary_auth(
        self, principal: Principal, ctx: LoginContext, *, passkey: bool = False
    ) -> LoginOutcome:
        permissions = await self.permissions.get_or_load(principal.id)
        decision, token = self.mfa.evaluate(principal, permissions, passkey=passkey)
        if decision == MfaDecision.CHALLENGE:
            await self._audit(
                AuditAction.MFA_CHALLENGE_SENT,
                principal.id,
                "Principal",
                principal.id,
                {"step": "awaiting_mfa"},
            )
            return MfaRequired(mfa_token=token)
        if decision == MfaDecision.SETUP_REQUIRED:
            await self._audit(
                AuditAction.MFA_SETUP_REQUIRED,
                principal.id,
                "Principal",
                principal.id,
                {"step": "awaiting_mfa_setup"},
            )
            return MfaSetupRequired(setup_token=token)
        return await self._establish_session(
            principal, permissions, ctx, strong_auth=passkey
        )

    async def _establish_session(
        self,
        principal: Principal,
        permissions: List[str],
        ctx: LoginContext,
        *,
        strong_auth: bool = False,
        backup_codes: Optional[List[str]] = None,
    ) -> LoginOutcome:
        geo = self.geo.locate(ctx.ip_address)
        info = self.device_info.parse(ctx.user_agent)
        device_id = ctx.device_id or new_id()
        verdict = self.trust.evaluate(principal.id, device_id, ctx.fingerprint, info, geo)

        if verdict.requires_approval:
            suspicious = verdict.status == TrustStatus.SUSPICIOUS
            risk = verdict.risk
            open_kwargs = dict(
                fingerprint=ctx.fingerprint,
                user_agent=ctx.user_agent,
                info=info,
                geo=geo,
                ip_address=ctx.ip_address,
                risk=risk,
                remember_me=ctx.remember_me,
                existing=verdict.device if suspicious else None,
            )
            if strong_auth:
                trusted = await self.approvals.trust_directly(
                    principal.id, device_id, **open_kwargs
                )
                if isinstance(trusted, AuthError):
                    return trusted
                await self._audit(
                    AuditAction.DEVICE_APPROVED,
                    principal.id,
                    "Device",
                    trusted.id,
                    {"method": "passkey", "risk_score": risk.score},
                )
                return await self._issue_session(
                    principal,
                    permissions,
                    trusted,
                    remember_me=ctx.remember_me,
                    geo=geo,
                    info=info,
                    ip_address=ctx.ip_address,
                    is_new_device=True,
                    backup_codes=backup_codes,
                )
            return await self._require_approval(
                principal, device_id, risk, suspicious, open_kwargs, backup_codes
            )

        device = verdict.device
        used = apply_device_event(
            device, DeviceUsed(ip_address=ctx.ip_address, geo=geo, at=self._clock())
        )
        if self.devices.update_device(used.state, expected_version=device.version):
            device = used.state
        else:
            logger.warning("device_usage_not_recorded", session_id=device.id)
        await self.reauth.apply(device.id, used.effects)
        return await self._issue_session(
            principal,
            permissions,
            device,
            remember_me=ctx.remember_me,
            geo=geo,
            info=info,
            ip_address=ctx.ip_address,
            is_new_location=verdict.is_new_location,
            backup_codes=backup_codes,
        )

    async def _require_approval(
        self,
        principal: Principal,
        device_id: str,
        risk: RiskAssessment,
        suspicious: bool,
        open_kwargs: Dict[str, Any],
        backup_codes: Optional[List[str]],
    ) -> Union[DeviceApprovalRequired, AuthError]:
        opened = await self.approvals.open(principal.id, device_id, **open_kwargs)
        if isinstance(opened, AuthError):
            return opened
        pending = opened.device
        device_meta = {
            "device": pending.display_name,
            "browser": pending.browser,
            "operating_system": pending.operating_system,
            "location": pending.location.display or "Unknown location",
            "ip_address": pending.ip_address or "Unknown",
        }
        await self._notify(
            "device_approval_required",
            lambda: self.notifier.send_device_approval_required(
                principal.email,
                principal.first_name or principal.email,
                opened.approval_token,
                opened.approval_code,
                device_meta,
                risk.score,
                principal.preferred_language,
            ),
        )
        risk_level = "Suspicious" if suspicious else risk.level.value
        await self._audit(
            AuditAction.DEVICE_SUSPICIOUS if suspicious else AuditAction.DEVICE_APPROVAL_REQUIRED,
            principal.id,
            "Device",
            pending.id,
            {
                "score": risk.score,
                "level": risk_level,
                "factors": list(risk.factors),
                "device_id": device_id,
            },
        )
        return DeviceApprovalRequired(
            approval_token=opened.approval_token,
            session_id=pending.id,
            device_id=device_id,
            risk_score=risk.score,
            risk_level=risk_level,
            risk_factors=list(risk.factors),
            backup_codes=backup_codes,
        )

    async def _issue_session(
        self,
        principal: Principal,
        permissions: List[str],
        device: Device,
        *,
        remember_me: bool,
        geo: GeoLocation,
        info: DeviceInfo,
        ip_address: Optional[str],
        is_new_device: bool = False,
        is_new_location: bool = False,
        backup_codes: Optional[List[str]] = None,
    ) -> Union[SessionIssued, AuthError]:
        # the record in hand was loaded before several awaits
        current = self.principals.get_principal(principal.id)
        if current is None or current.is_anonymized or not current.is_active:
            logger.warning("session_refused_inactive_principal", principal_id=principal.id)
            return AuthError.user_inactive()
        principal = self._save_principal(current, LoginSucceeded(at=self._clock()))
        tokens = self.issuer.issue(
            principal.id, principal.email, permissions, device.id, remember_me=remember_me
        )
        self.trust.record_login(principal.id, geo, info.device_type, ip_address)
        await self._audit(
            AuditAction.LOGIN,
            principal.id,
            "Principal",
            principal.id,
            {
                "session_id": device.id,
                "device_id": device.device_id,
                "is_new_location": is_new_location,
                "remember_me": remember_me,
            },
        )
        if is_new_location:
            await self._audit(
                AuditAction.LOGIN_NEW_LOCATION,
                principal.id,
                "Device",
                device.id,
                {"country": geo.country_code, "city": geo.city},
            )
            await self._notify(
                "new_location_login",
                lambda: self.notifier.send(
                    principal.email,
                    "New sign-in location",
                    "new_location_login",
                    {
                        "name": principal.first_name or principal.email,
                        "location": geo.display or "Unknown location",
                        "ip_address": ip_address or "Unknown",
                        "device": device.display_name,
                    },
                    principal.preferred_language,
                ),
            )
        return SessionIssued(
            principal=principal,
            permissions=permissions,
            tokens=tokens,
            device_id=device.device_id,
            is_new_device=is_new_device,
            is_new_location=is_new_location,
            backup_codes=backup_codes,
        )

    # -- magic link --------------------------------------------------------

    async def request_magic_link(self, email: str, ctx: LoginContext) -> Union[Accepted, AuthError]:
        captcha_error = await self._check_captcha(ctx, "magic_link")
        if captcha_error:
            return captcha_error
        principal = self.principals.get_principal_by_email(normalize_email(email))
        if principal is None or not principal.is_active or principal.is_anonymized:
            logger.info("magic_link_request_ignored")
            return Accepted()
        token = self.magic_links.issue(principal.id)
        url = f"{self.settings.app_base_url.rstrip('/')}/magic-link?token={token}"
        await self._notify(
            "magic_link",
            lambda: self.notifier.send(
                principal.email,
                "Your sign-in link",
                "magic_link",
                {
                    "name": principal.first_name or principal.email,
                    "magic_link_url": url,
                    "expiry_minutes": self.settings.magic_link_ttl_minutes,
                },
                principal.preferred_language,
            ),
        )
        await self._audit(
            AuditAction.MAGIC_LINK_REQUESTED, principal.id, "Principal", principal.id
        )
        return Accepted()

    async def login_magic_link(self, token: str, ctx: LoginContext) -> LoginOutcome:
        invalid = AuthError(AuthErrorKind.MAGIC_LINK_INVALID, "sign-in link is invalid or expired")
        principal_id = self.magic_links.peek(token)
        if principal_id is None:
            return invalid
        # a blocked principal keeps the link for when the lock lifts
        principal = self._load_active(principal_id)
        if isinstance(principal, AuthError):
            return principal
        if await self.lockout.is_blocked(principal.email):
            return AuthError.account_locked(await self.lockout.locked_until(principal.email))
        if self.magic_links.consume(token) != principal.id:
            return invalid
        return await self._after_primary_auth(principal, ctx)

    # -- passkey -----------------------------------------------------------

    @staticmethod
    def _challenge_key(challenge_id: str) -> str:
        return f"passkey:challenge:{challenge_id}"

    async def begin_passkey_login(self) -> PasskeyChallenge:
        challenge_id = new_id()
        challenge = generate_url_token(32)
        ttl = self.settings.passkey_challenge_ttl_seconds
        await self.cache.set(self._challenge_key(challenge_id), challenge, ttl)
        return PasskeyChallenge(
            challenge_id=challenge_id, challenge=challenge, timeout_seconds=ttl
        )

    async def login_passkey(
        self, challenge_id: str, assertion: Dict[str, Any], ctx: LoginContext
    ) -> LoginOutcome:
        invalid = AuthError(AuthErrorKind.PASSKEY_INVALID, "passkey assertion is invalid")
        challenge = await self.cache.pop(self._challenge_key(challenge_id))
        if challenge is None:
            return invalid
        credential_id = assertion.get("credential_id") or assertion.get("id")
        passkey = self.passkeys.get_passkey_by_credential_id(credential_id) if credential_id else None
        if passkey is None:
            await self._audit(AuditAction.LOGIN_FAILED, None, details={"reason": "unknown passkey"})
            return invalid
        verified = self.passkey_verifier.verify_assertion(
            assertion,
            challenge=challenge,
            public_key=passkey.public_key,
            stored_sign_count=passkey.sign_count,
        )
        if verified is None or verified.credential_id != passkey.credential_id:
            await self._audit(
                AuditAction.LOGIN_FAILED,
                passkey.principal_id,
                "Passkey",
                passkey.id,
                {"reason": "passkey assertion rejected"},
            )
            return invalid
        principal = self._load_active(passkey.principal_id)
        if isinstance(principal, AuthError):
            return principal

        passkey.sign_count = verified.sign_count
        passkey.last_used_at = self._clock()
        self.passkeys.save_passkey(passkey)
        await self.lockout.reset(principal.email)
        await self._audit(
            AuditAction.PASSKEY_LOGIN, principal.id, "Passkey", passkey.id
        )
        return await self._after_primary_auth(principal, ctx, passkey=True)

    # -- MFA ---------------------------------------------------------------

    async def verify_mfa(self, mfa_token: str, code: str, ctx: LoginContext) -> LoginOutcome:
        payload = await self.mfa.resolve_token(mfa_token, PURPOSE_MFA_VERIFICATION)
        if payload is None:
            return AuthError(AuthErrorKind.TOKEN_INVALID, "MFA token is invalid or expired")
        principal = self._load_active(payload["sub"])
        if isinstance(principal, AuthError):
            return principal
        error = await self.mfa.verify_code(principal.id, code)
        if error is not None:
            await self._audit(
                AuditAction.MFA_FAILED,
                principal.id,
                "Principal",
                principal.id,
                {"code": error.code},
            )
            return error
        await self.mfa.consume_token(payload)
        await self._audit(AuditAction.MFA_VERIFIED, principal.id, "Principal", principal.id)
        permissions = await self.permissions.get_or_load(principal.id)
        return await self._establish_session(principal, permissions, ctx)

    async def begin_mfa_setup(self, setup_token: str) -> Union[MfaSetupStarted, AuthError]:
        payload = await self.mfa.resolve_token(setup_token, PURPOSE_MFA_SETUP)
        if payload is None:
            return AuthError(AuthErrorKind.TOKEN_INVALID, "setup token is invalid or expired")
        principal = self._load_active(payload["sub"])
        if isinstance(principal, AuthError):
            return principal
        setup = self.mfa.begin_setup(principal)
        return MfaSetupStarted(secret=setup.secret, provisioning_uri=setup.provisioning_uri)

    async def confirm_mfa_setup(
        self, setup_token: str, code: str, ctx: LoginContext
    ) -> LoginOutcome:
        payload = await self.mfa.resolve_token(setup_token, PURPOSE_MFA_SETUP)
        if payload is None:
            return AuthError(AuthErrorKind.TOKEN_INVALID, "setup token is invalid or expired")
        principal = self._load_active(payload["sub"])
        if isinstance(principal, AuthError):
            return principal
        backup_codes = await self.mfa.confirm_setup(principal, code)
        if isinstance(backup_codes, AuthError):
            return backup_codes
        await self.mfa.consume_token(payload)
        principal = self._save_principal(principal, MfaEnrolled())
        await self._audit(AuditAction.MFA_ENABLED, principal.id, "Principal", principal.id)
        await self._notify(
            "mfa_enabled",
            lambda: self.notifier.send(
                principal.email,
                "Two-factor authentication enabled",
                "mfa_enabled",
                {"name": principal.first_name or principal.email},
                principal.preferred_language,
            ),
        )
        permissions = await self.permissions.get_or_load(principal.id)
        return await self._establish_session(
            principal, permissions, ctx, backup_codes=backup_codes
        )

    # -- device approval ---------------------------------------------------

    async def _approval_failed(self, token_error: AuthError) -> AuthError:
        await self._audit(
            AuditAction.DEVICE_APPROVAL_FAILED, None, "Device", None, {"code": token_error.code}
        )
        return token_error

    async def resend_device_approval(
        self, approval_token: str, ctx: LoginContext
    ) -> Union[ApprovalResent, AuthError]:
        if ctx.captcha_token:
            captcha_error = await self._check_captcha(ctx, "device_approval_resend")
            if captcha_error:
                return captcha_error
        reissued = await self.approvals.resend(approval_token)
        if isinstance(reissued, AuthError):
            return reissued
        device = reissued.device
        principal = self.principals.get_principal(device.principal_id)
        if principal is None:
            return AuthError(AuthErrorKind.APPROVAL_INVALID, "approval token is invalid")
        device_meta = {
            "device": device.display_name,
            "browser": device.browser,
            "operating_system": device.operating_system,
            "location": device.location.display or "Unknown location",
            "ip_address": device.ip_address or "Unknown",
        }
        await self._notify(
            "device_approval_required",
            lambda: self.notifier.send_device_approval_required(
                principal.email,
                principal.first_name or principal.email,
                reissued.approval_token,
                reissued.approval_code,
                device_meta,
                device.risk_score,
                principal.preferred_language,
            ),
        )
        await self._audit(
            AuditAction.DEVICE_APPROVAL_RESENT, principal.id, "Device", device.id
        )
        return ApprovalResent(
            approval_token=reissued.approval_token,
            session_id=device.id,
            expires_at=device.approval_expires_at.isoformat(),
        )

    async def approve_device_by_code(
        self, approval_token: str, code: str
    ) -> Union[SessionIssued, AuthError]:
        device = await self.approvals.approve_by_code(approval_token, code)
        if isinstance(device, AuthError):
            return await self._approval_failed(device)
        principal = self._load_active(device.principal_id)
        if isinstance(principal, AuthError):
            return principal
        await self._audit(
            AuditAction.DEVICE_APPROVED,
            principal.id,
            "Device",
            device.id,
            {"method": "code", "risk_score": device.risk_score},
        )
        permissions = await self.permissions.get_or_load(principal.id)
        return await self._issue_session(
            principal,
            permissions,
            device,
            remember_me=device.remember_me,
            geo=device.location,
            info=DeviceInfo(device_type=device.device_type),
            ip_address=device.ip_address,
            is_new_device=True,
        )

    async def approve_device_by_link(
        self, approval_token: str
    ) -> Union[DeviceApproved, AuthError]:
        device = await self.approvals.approve_by_link(approval_token)
        if isinstance(device, AuthError):
            return await self._approval_failed(device)
        await self._audit(
            AuditAction.DEVICE_APPROVED,
            device.principal_id,
            "Device",
            device.id,
            {"method": "link", "risk_score": device.risk_score},
        )
        return DeviceApproved(session_id=device.id)

    async def deny_device(self, approval_token: str) -> Union[DeviceDenied, AuthError]:
        device = await self.approvals.deny(approval_token)
        if isinstance(device, AuthError):
            return await self._approval_failed(device)
        await self._audit(AuditAction.DEVICE_DENIED, device.principal_id, "Device", device.id)
        principal = self.principals.get_principal(device.principal_id)
        if principal is not None:
            await self._notify(
                "device_denied",
                lambda: self.notifier.send(
                    principal.email,
                    "Sign-in blocked",
                    "device_denied",
                    {
                        "name": principal.first_name or principal.email,
                        "device": device.display_name,
                        "location": device.location.display or "Unknown location",
                    },
                    principal.preferred_language,
                ),
            )
        return DeviceDenied(session_id=device.id)

    # -- session lifecycle -------------------------------------------------

    async def refresh(
        self, refresh_token: str, ctx: Optional[LoginContext] = None
    ) -> Union[SessionIssued, AuthError]:
        record = self.issuer.find_active_refresh_token(refresh_token or "")
        if record is None or record.device_id is None:
            return AuthError(AuthErrorKind.TOKEN_INVALID, "refresh token is invalid")
        invalidation = await self.reauth.check(record.device_id)
        if invalidation is not None:
            return invalidation
        device = self.devices.get_device(record.device_id)
        if device is None or not device.is_trusted:
            return AuthError(AuthErrorKind.SESSION_REVOKED, "session has been revoked")
        principal = self._load_active(record.principal_id)
        if isinstance(principal, AuthError):
            return principal
        self.issuer.revoke(record)
        permissions = await self.permissions.get_or_load(principal.id)
        tokens = self.issuer.issue(
            principal.id,
            principal.email,
            permissions,
            device.id,
            remember_me=record.remember_me,
        )
        await self._audit(
            AuditAction.TOKEN_REFRESHED,
            principal.id,
            "Device",
            device.id,
            {"ip_address": ctx.ip_address if ctx else None},
        )
        return SessionIssued(
            principal=principal,
            permissions=permissions,
            tokens=tokens,
            device_id=device.device_id,
        )

    async def logout(self, refresh_token: str) -> Accepted:
        record = self.issuer.find_active_refresh_token(refresh_token or "")
        if record is None:
            return Accepted()
        self.issuer.revoke(record)
        if record.device_id:
            await self.reauth.mark_session_revoked(record.device_id)
        await self._audit(AuditAction.LOGOUT, record.principal_id, "Device", record.device_id)
        return Accepted()

    async def authenticate(self, access_token: str) -> Union[AuthContext, AuthError]:
        """Validate a bearer token the way every authenticated request must."""
        payload = self.issuer.decode_access_token(access_token or "")
        if payload is None:
            return AuthError(AuthErrorKind.TOKEN_INVALID, "access token is invalid")
        invalidation = await self.reauth.check(payload["sid"])
        if invalidation is not None:
            return invalidation
        principal = self.principals.get_principal(payload["sub"])
        if principal is None or not principal.is_active:
            return AuthError(AuthErrorKind.SESSION_REVOKED, "session has been revoked")
        return AuthContext(
            principal_id=principal.id,
            email=principal.email,
            permissions=list(payload.get("permissions") or []),
            session_id=payload["sid"],
            user_type=payload.get("user_type", "system"),
        )
