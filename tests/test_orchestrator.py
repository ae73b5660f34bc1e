"""End-to-end sign-in flows through AuthOrchestrator with in-memory collaborators."""

from dataclasses import replace
from datetime import timedelta

import pyotp
import pytest

from conftest import IP_NEW_YORK, IP_SYDNEY, PASSWORD
from sysauth.service.audit import AuditAction
from sysauth.service.errors import AuthError, AuthErrorKind
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
from sysauth.storage.models import DeviceStatus, Passkey, new_id

EMAIL = "admin@example.com"


async def _trusted_session(services, ctx, email=EMAIL, password=PASSWORD):
    pending = await services.auth.login_password(email, password, ctx)
    assert isinstance(pending, DeviceApprovalRequired)
    code = services.notifier.last_approval["approval_code"]
    session = await services.auth.approve_device_by_code(pending.approval_token, code)
    assert isinstance(session, SessionIssued)
    return session


def _audit_actions(services):
    return [entry.action for entry in services.store.audit_entries]


async def _enable_mfa(services, principal):
    setup = services.mfa.begin_setup(principal)
    await services.mfa.confirm_setup(principal, pyotp.TOTP(setup.secret).now())
    services.store.save_principal(replace(principal, mfa_enabled=True))
    return setup.secret


class TestPasswordLogin:
    async def test_unknown_email(self, services, login_ctx):
        result = await services.auth.login_password("ghost@example.com", PASSWORD, login_ctx())
        assert result.kind == AuthErrorKind.INVALID_CREDENTIALS
        assert AuditAction.LOGIN_FAILED in _audit_actions(services)

    async def test_wrong_password_locks_after_five(self, services, make_principal, login_ctx):
        principal = make_principal()
        for _ in range(4):
            result = await services.auth.login_password(EMAIL, "wrong", login_ctx())
            assert result.kind == AuthErrorKind.INVALID_CREDENTIALS
        locked = await services.auth.login_password(EMAIL, "wrong", login_ctx())
        assert locked.kind == AuthErrorKind.ACCOUNT_LOCKED
        assert locked.status_code == 423
        assert "locked_until" in locked.details()

        blocked = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        assert blocked.kind == AuthErrorKind.ACCOUNT_LOCKED
        stored = services.store.get_principal(principal.id)
        assert stored.failed_login_attempts == 5
        assert stored.locked_until is not None
        actions = _audit_actions(services)
        assert AuditAction.ACCOUNT_LOCKED in actions
        assert AuditAction.LOGIN_BLOCKED in actions

    async def test_unknown_emails_are_throttled_too(self, services, login_ctx):
        for _ in range(5):
            result = await services.auth.login_password("ghost@example.com", "x", login_ctx())
        assert result.kind == AuthErrorKind.ACCOUNT_LOCKED

    async def test_lock_expires(self, services, make_principal, login_ctx, clock):
        make_principal()
        for _ in range(5):
            await services.auth.login_password(EMAIL, "wrong", login_ctx())
        clock.advance(seconds=61)
        result = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        assert isinstance(result, DeviceApprovalRequired)
        assert services.store.get_principal_by_email(EMAIL).failed_login_attempts == 0

    async def test_long_lockout_sends_email(self, services, make_principal, login_ctx, clock):
        make_principal()
        for _ in range(9):
            clock.advance(hours=1, seconds=-1)
            await services.auth.login_password(EMAIL, "wrong", login_ctx())
        assert "account_locked" in services.notifier.templates()

    async def test_inactive_principal(self, services, make_principal, login_ctx):
        principal = make_principal()
        services.store.save_principal(replace(principal, is_active=False))
        result = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        assert result.kind == AuthErrorKind.USER_INACTIVE

    async def test_captcha_rejected_before_credentials(self, services, make_principal, login_ctx):
        make_principal()
        services.captcha.passes = False
        result = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        assert result.kind == AuthErrorKind.CAPTCHA_INVALID
        assert await services.lockout.remaining_attempts(EMAIL) == 4

    async def test_email_is_case_insensitive(self, services, make_principal, login_ctx):
        make_principal()
        result = await services.auth.login_password("  ADMIN@example.com", PASSWORD, login_ctx())
        assert isinstance(result, DeviceApprovalRequired)


class TestNewDevice:
    async def test_first_login_requires_approval(self, services, make_principal, login_ctx):
        principal = make_principal()
        result = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        assert isinstance(result, DeviceApprovalRequired)
        assert result.risk_level == "Low"
        assert result.risk_factors == ["new_device"]
        assert result.device_id == "laptop-1"
        email = services.notifier.last_approval
        assert email["email"] == principal.email
        assert email["approval_token"] == result.approval_token
        assert email["device_meta"]["location"] == "Mountain View, United States"
        error = result.to_error()
        assert error.status_code == 403
        assert error.payload["approval_token"] == result.approval_token
        assert AuditAction.DEVICE_APPROVAL_REQUIRED in _audit_actions(services)

    async def test_approve_by_code_issues_session(self, services, make_principal, login_ctx):
        principal = make_principal(permissions=["reports:read"])
        session = await _trusted_session(services, login_ctx())
        assert session.is_new_device
        assert session.permissions == ["reports:read"]
        ctx = await services.auth.authenticate(session.tokens.access_token)
        assert isinstance(ctx, AuthContext)
        assert ctx.principal_id == principal.id
        assert ctx.session_id == session.tokens.session_id
        assert services.store.get_principal(principal.id).last_login_at is not None

    async def test_trusted_device_signs_in_directly(self, services, make_principal, login_ctx):
        make_principal()
        first = await _trusted_session(services, login_ctx())
        second = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        assert isinstance(second, SessionIssued)
        assert not second.is_new_device
        assert second.tokens.session_id == first.tokens.session_id
        assert len(services.notifier.approvals) == 1

    async def test_remember_me_carries_through_approval(self, services, make_principal, login_ctx, clock):
        make_principal()
        session = await _trusted_session(services, login_ctx(remember_me=True))
        assert session.tokens.refresh_expires_at == clock.now() + timedelta(days=30)

    async def test_new_city_notifies_but_signs_in(self, services, make_principal, login_ctx):
        make_principal()
        await _trusted_session(services, login_ctx())
        result = await services.auth.login_password(
            EMAIL, PASSWORD, login_ctx(ip_address=IP_NEW_YORK)
        )
        assert isinstance(result, SessionIssued)
        assert result.is_new_location
        assert "new_location_login" in services.notifier.templates()
        assert AuditAction.LOGIN_NEW_LOCATION in _audit_actions(services)

    async def test_impossible_travel_demotes_trusted_device(self, services, make_principal, login_ctx):
        make_principal()
        session = await _trusted_session(services, login_ctx())
        result = await services.auth.login_password(EMAIL, PASSWORD, login_ctx(ip_address=IP_SYDNEY))
        assert isinstance(result, DeviceApprovalRequired)
        assert result.risk_level == "Suspicious"
        assert "impossible_travel" in result.risk_factors
        assert result.session_id == session.tokens.session_id
        assert AuditAction.DEVICE_SUSPICIOUS in _audit_actions(services)

        stale = await services.auth.authenticate(session.tokens.access_token)
        assert stale.kind == AuthErrorKind.FORCE_REAUTH_REQUIRED
        refreshed = await services.auth.refresh(session.tokens.refresh_token)
        assert refreshed.kind == AuthErrorKind.TOKEN_INVALID

    async def test_high_risk_new_device_still_needs_approval(
        self, services, make_principal, login_ctx
    ):
        make_principal()
        first = await _trusted_session(services, login_ctx())
        issued = len(services.store.refresh_tokens)
        result = await services.auth.login_password(
            EMAIL, PASSWORD, login_ctx(device_id="phone-1", ip_address=IP_SYDNEY)
        )
        assert isinstance(result, DeviceApprovalRequired)
        assert {"new_device", "new_country", "impossible_travel"} <= set(result.risk_factors)
        assert result.risk_level == "High"
        assert result.session_id != first.tokens.session_id
        assert len(services.store.refresh_tokens) == issued

    async def test_notification_failure_does_not_block_login(self, services, make_principal, login_ctx):
        make_principal()
        services.notifier.fail = True
        result = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        assert isinstance(result, DeviceApprovalRequired)

    async def test_missing_device_id_gets_generated(self, services, make_principal, login_ctx):
        make_principal()
        result = await services.auth.login_password(EMAIL, PASSWORD, login_ctx(device_id=None))
        assert isinstance(result, DeviceApprovalRequired)
        assert result.device_id


class TestDeviceApprovalFlows:
    async def test_wrong_code_is_audited(self, services, make_principal, login_ctx):
        make_principal()
        pending = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        result = await services.auth.approve_device_by_code(pending.approval_token, "AAAA-AAAA")
        assert result.kind == AuthErrorKind.APPROVAL_CODE_INVALID
        assert result.details() == {"remaining_attempts": 2}
        assert AuditAction.DEVICE_APPROVAL_FAILED in _audit_actions(services)

    async def test_approve_by_link_then_sign_in(self, services, make_principal, login_ctx):
        make_principal()
        pending = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        approved = await services.auth.approve_device_by_link(pending.approval_token)
        assert isinstance(approved, DeviceApproved)
        assert approved.session_id == pending.session_id
        result = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        assert isinstance(result, SessionIssued)

    async def test_deny_blocks_the_request(self, services, make_principal, login_ctx):
        make_principal()
        pending = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        denied = await services.auth.deny_device(pending.approval_token)
        assert isinstance(denied, DeviceDenied)
        assert "device_denied" in services.notifier.templates()
        again = await services.auth.approve_device_by_link(pending.approval_token)
        assert again.kind == AuthErrorKind.APPROVAL_DENIED
        assert services.store.get_device(pending.session_id).status == DeviceStatus.REVOKED

    async def test_resend_respects_cooldown(self, services, make_principal, login_ctx, clock):
        make_principal()
        pending = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        early = await services.auth.resend_device_approval(pending.approval_token, login_ctx())
        assert early.kind == AuthErrorKind.RESEND_COOLDOWN
        clock.advance(seconds=61)
        resent = await services.auth.resend_device_approval(pending.approval_token, login_ctx())
        assert isinstance(resent, ApprovalResent)
        assert resent.approval_token != pending.approval_token
        assert len(services.notifier.approvals) == 2
        session = await services.auth.approve_device_by_code(
            resent.approval_token, services.notifier.last_approval["approval_code"]
        )
        assert isinstance(session, SessionIssued)

    async def test_resend_checks_captcha_when_supplied(self, services, make_principal, login_ctx):
        make_principal()
        pending = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        services.captcha.passes = False
        result = await services.auth.resend_device_approval(
            pending.approval_token, login_ctx(captcha_token="bad")
        )
        assert result.kind == AuthErrorKind.CAPTCHA_INVALID

    async def test_expired_approval(self, services, make_principal, login_ctx, clock):
        make_principal()
        pending = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        clock.advance(minutes=31)
        result = await services.auth.approve_device_by_code(
            pending.approval_token, services.notifier.last_approval["approval_code"]
        )
        assert result.kind == AuthErrorKind.APPROVAL_EXPIRED

    async def test_approval_for_deactivated_principal(self, services, make_principal, login_ctx):
        principal = make_principal()
        pending = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        services.store.save_principal(replace(principal, is_active=False))
        result = await services.auth.approve_device_by_code(
            pending.approval_token, services.notifier.last_approval["approval_code"]
        )
        assert result.kind == AuthErrorKind.USER_INACTIVE

    async def test_deactivation_during_login_is_not_overwritten(
        self, services, make_principal, login_ctx, monkeypatch
    ):
        principal = make_principal()
        await _trusted_session(services, login_ctx())
        issued = len(services.store.refresh_tokens)
        apply_markers = services.reauth.apply
        deactivated = []

        async def apply_then_deactivate(session_id, effects):
            await apply_markers(session_id, effects)
            if not deactivated:
                deactivated.append(session_id)
                await services.admin.deactivate_principal("actor-1", principal.id)

        monkeypatch.setattr(services.reauth, "apply", apply_then_deactivate)
        result = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())

        assert deactivated
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.USER_INACTIVE
        assert services.store.get_principal(principal.id).is_active is False
        assert len(services.store.refresh_tokens) == issued


class TestMfa:
    async def test_privileged_principal_must_enrol(self, services, make_principal, login_ctx):
        principal = make_principal(permissions=["system:users:read"])
        result = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        assert isinstance(result, MfaSetupRequired)

        started = await services.auth.begin_mfa_setup(result.setup_token)
        assert isinstance(started, MfaSetupStarted)
        code = pyotp.TOTP(started.secret).now()
        pending = await services.auth.confirm_mfa_setup(result.setup_token, code, login_ctx())
        assert isinstance(pending, DeviceApprovalRequired)
        assert len(pending.backup_codes) == 10
        assert "backup_codes" in pending.to_error().payload
        assert services.store.get_principal(principal.id).mfa_enabled
        assert "mfa_enabled" in services.notifier.templates()

        replay = await services.auth.confirm_mfa_setup(result.setup_token, code, login_ctx())
        assert replay.kind == AuthErrorKind.TOKEN_INVALID

    async def test_enrolled_principal_is_challenged(self, services, make_principal, login_ctx):
        principal = make_principal(permissions=["system:users:read"])
        secret = await _enable_mfa(services, principal)
        result = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        assert isinstance(result, MfaRequired)

        wrong = await services.auth.verify_mfa(result.mfa_token, "000000", login_ctx())
        assert wrong.kind == AuthErrorKind.MFA_CODE_INVALID
        assert AuditAction.MFA_FAILED in _audit_actions(services)

        pending = await services.auth.verify_mfa(
            result.mfa_token, pyotp.TOTP(secret).now(), login_ctx()
        )
        assert isinstance(pending, DeviceApprovalRequired)
        replay = await services.auth.verify_mfa(
            result.mfa_token, pyotp.TOTP(secret).now(), login_ctx()
        )
        assert replay.kind == AuthErrorKind.TOKEN_INVALID

    async def test_mfa_then_trusted_device(self, services, make_principal, login_ctx):
        principal = make_principal(permissions=["system:users:read"])
        secret = await _enable_mfa(services, principal)
        challenge = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        pending = await services.auth.verify_mfa(
            challenge.mfa_token, pyotp.TOTP(secret).now(), login_ctx()
        )
        await services.auth.approve_device_by_link(pending.approval_token)

        challenge = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        assert isinstance(challenge, MfaRequired)
        session = await services.auth.verify_mfa(
            challenge.mfa_token, pyotp.TOTP(secret).now(), login_ctx()
        )
        assert isinstance(session, SessionIssued)
        assert "system:users:read" in session.permissions

    async def test_invalid_mfa_token(self, services):
        result = await services.auth.verify_mfa("garbage", "123456", None)
        assert result.kind == AuthErrorKind.TOKEN_INVALID


class TestMagicLink:
    async def test_unknown_email_is_silently_accepted(self, services, login_ctx):
        result = await services.auth.request_magic_link("ghost@example.com", login_ctx())
        assert isinstance(result, Accepted)
        assert services.notifier.sent == []

    async def test_link_signs_in_once(self, services, make_principal, login_ctx):
        make_principal()
        result = await services.auth.request_magic_link(EMAIL, login_ctx())
        assert isinstance(result, Accepted)
        url = services.notifier.sent[-1]["variables"]["magic_link_url"]
        token = url.split("token=", 1)[1]
        pending = await services.auth.login_magic_link(token, login_ctx())
        assert isinstance(pending, DeviceApprovalRequired)
        again = await services.auth.login_magic_link(token, login_ctx())
        assert again.kind == AuthErrorKind.MAGIC_LINK_INVALID

    async def test_link_respects_lockout(self, services, make_principal, login_ctx, clock):
        make_principal()
        await services.auth.request_magic_link(EMAIL, login_ctx())
        token = services.notifier.sent[-1]["variables"]["magic_link_url"].split("token=", 1)[1]
        for _ in range(5):
            await services.auth.login_password(EMAIL, "wrong", login_ctx())
        result = await services.auth.login_magic_link(token, login_ctx())
        assert result.kind == AuthErrorKind.ACCOUNT_LOCKED

        clock.advance(seconds=61)
        result = await services.auth.login_magic_link(token, login_ctx())
        assert isinstance(result, DeviceApprovalRequired)


class TestPasskey:
    @pytest.fixture
    def passkey_owner(self, services, make_principal):
        def _register(permissions=None):
            principal = make_principal(permissions=permissions)
            services.store.add_passkey(
                Passkey(
                    id=new_id(),
                    principal_id=principal.id,
                    credential_id="cred-1",
                    public_key="pk",
                )
            )
            return principal

        return _register

    async def _login(self, services, ctx, signature="valid", challenge=None):
        challenge = challenge or await services.auth.begin_passkey_login()
        assertion = {"credential_id": "cred-1", "signature": signature}
        return await services.auth.login_passkey(challenge.challenge_id, assertion, ctx)

    async def test_passkey_trusts_new_device(self, services, passkey_owner, login_ctx):
        passkey_owner()
        result = await self._login(services, login_ctx())
        assert isinstance(result, SessionIssued)
        assert result.is_new_device
        assert services.store.get_passkey_by_credential_id("cred-1").sign_count == 1
        assert AuditAction.PASSKEY_LOGIN in _audit_actions(services)

    async def test_challenge_is_single_use(self, services, passkey_owner, login_ctx):
        passkey_owner()
        challenge = await services.auth.begin_passkey_login()
        assert isinstance(challenge, PasskeyChallenge)
        await self._login(services, login_ctx(), challenge=challenge)
        replay = await self._login(services, login_ctx(), challenge=challenge)
        assert replay.kind == AuthErrorKind.PASSKEY_INVALID

    async def test_bad_assertion(self, services, passkey_owner, login_ctx):
        passkey_owner()
        result = await self._login(services, login_ctx(), signature="forged")
        assert result.kind == AuthErrorKind.PASSKEY_INVALID

    async def test_privileged_passkey_user_still_enrols(self, services, passkey_owner, login_ctx):
        passkey_owner(permissions=["system:users:update"])
        result = await self._login(services, login_ctx())
        assert isinstance(result, MfaSetupRequired)

    async def test_passkey_satisfies_enrolled_mfa(self, services, passkey_owner, login_ctx):
        principal = passkey_owner(permissions=["system:users:update"])
        await _enable_mfa(services, principal)
        result = await self._login(services, login_ctx())
        assert isinstance(result, SessionIssued)


class TestSessionLifecycle:
    async def test_refresh_rotates_tokens(self, services, make_principal, login_ctx):
        make_principal()
        session = await _trusted_session(services, login_ctx())
        refreshed = await services.auth.refresh(session.tokens.refresh_token, login_ctx())
        assert isinstance(refreshed, SessionIssued)
        assert refreshed.tokens.refresh_token != session.tokens.refresh_token
        assert refreshed.tokens.session_id == session.tokens.session_id
        reused = await services.auth.refresh(session.tokens.refresh_token)
        assert reused.kind == AuthErrorKind.TOKEN_INVALID

    async def test_logout_revokes_session(self, services, make_principal, login_ctx):
        make_principal()
        session = await _trusted_session(services, login_ctx())
        assert isinstance(await services.auth.logout(session.tokens.refresh_token), Accepted)
        revoked = await services.auth.authenticate(session.tokens.access_token)
        assert revoked.kind == AuthErrorKind.SESSION_REVOKED
        refreshed = await services.auth.refresh(session.tokens.refresh_token)
        assert refreshed.kind == AuthErrorKind.TOKEN_INVALID
        assert isinstance(await services.auth.logout(session.tokens.refresh_token), Accepted)

    async def test_sign_in_again_after_logout(self, services, make_principal, login_ctx):
        make_principal()
        session = await _trusted_session(services, login_ctx())
        await services.auth.logout(session.tokens.refresh_token)
        again = await services.auth.login_password(EMAIL, PASSWORD, login_ctx())
        assert isinstance(again, SessionIssued)
        ctx = await services.auth.authenticate(again.tokens.access_token)
        assert isinstance(ctx, AuthContext)

    async def test_authenticate_rejects_garbage(self, services):
        result = await services.auth.authenticate("garbage")
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.TOKEN_INVALID

    async def test_refresh_for_inactive_principal(self, services, make_principal, login_ctx):
        principal = make_principal()
        session = await _trusted_session(services, login_ctx())
        services.store.save_principal(replace(principal, is_active=False))
        result = await services.auth.refresh(session.tokens.refresh_token)
        assert result.kind == AuthErrorKind.USER_INACTIVE
