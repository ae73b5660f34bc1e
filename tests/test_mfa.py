"""MFA decision table, TOTP verification, backup codes and enrolment."""

import pyotp
import pytest

from sysauth.service.errors import AuthErrorKind
from sysauth.service.mfa import MfaDecision, decide
from sysauth.service.tokens import PURPOSE_MFA_SETUP, PURPOSE_MFA_VERIFICATION
from sysauth.storage.models import Principal


@pytest.fixture
def principal(services):
    return services.store.create_principal("ops@example.com", permissions=["system:users:read"])


async def _enrol(services, principal):
    setup = services.mfa.begin_setup(principal)
    codes = await services.mfa.confirm_setup(principal, pyotp.TOTP(setup.secret).now())
    return setup.secret, codes


class TestDecide:
    @pytest.mark.parametrize(
        "mfa_enabled,permissions,passkey,expected",
        [
            (True, [], False, MfaDecision.CHALLENGE),
            (True, ["system:users:read"], True, MfaDecision.PROCEED),
            (False, ["system:users:read"], False, MfaDecision.SETUP_REQUIRED),
            (False, ["system:users:read"], True, MfaDecision.SETUP_REQUIRED),
            (False, ["reports:read"], False, MfaDecision.PROCEED),
            (False, [], False, MfaDecision.PROCEED),
        ],
    )
    def test_table(self, mfa_enabled, permissions, passkey, expected):
        assert decide(mfa_enabled, permissions, passkey=passkey) == expected

    def test_evaluate_mints_matching_token(self, services):
        principal = Principal.new("ops@example.com")
        decision, token = services.mfa.evaluate(principal, ["system:audit:read"])
        assert decision == MfaDecision.SETUP_REQUIRED
        assert services.issuer.decode_purpose_token(token, PURPOSE_MFA_SETUP) is not None


class TestEnrolment:
    async def test_confirm_enables_and_returns_backup_codes(self, services, principal):
        secret, codes = await _enrol(services, principal)
        config = services.store.get_mfa_config(principal.id)
        assert config.enabled
        assert config.secret == secret
        assert len(codes) == 10
        assert len(config.backup_code_hashes) == 10
        assert codes[0] not in config.backup_code_hashes

    async def test_begin_setup_is_stable_until_confirmed(self, services, principal):
        first = services.mfa.begin_setup(principal)
        second = services.mfa.begin_setup(principal)
        assert first.secret == second.secret
        assert "SysAuth" in first.provisioning_uri

    async def test_wrong_code_does_not_enable(self, services, principal):
        services.mfa.begin_setup(principal)
        result = await services.mfa.confirm_setup(principal, "000000")
        assert result.kind == AuthErrorKind.MFA_CODE_INVALID
        assert not services.store.get_mfa_config(principal.id).enabled

    async def test_confirm_without_setup(self, services, principal):
        result = await services.mfa.confirm_setup(principal, "123456")
        assert result.kind == AuthErrorKind.MFA_CODE_INVALID

    async def test_secret_is_encrypted_at_rest(self, services, principal):
        secret, _ = await _enrol(services, principal)
        assert services.store.mfa_configs[principal.id].secret != secret


class TestVerifyCode:
    async def test_totp_accepted(self, services, principal):
        secret, _ = await _enrol(services, principal)
        assert await services.mfa.verify_code(principal.id, pyotp.TOTP(secret).now()) is None

    async def test_backup_code_single_use(self, services, principal):
        _, codes = await _enrol(services, principal)
        assert await services.mfa.verify_code(principal.id, codes[0].lower()) is None
        again = await services.mfa.verify_code(principal.id, codes[0])
        assert again.kind == AuthErrorKind.MFA_CODE_INVALID
        assert len(services.store.get_mfa_config(principal.id).backup_code_hashes) == 9

    async def test_lockout_after_max_attempts(self, services, principal):
        secret, _ = await _enrol(services, principal)
        for _ in range(4):
            error = await services.mfa.verify_code(principal.id, "000000")
            assert error.kind == AuthErrorKind.MFA_CODE_INVALID
        error = await services.mfa.verify_code(principal.id, "000000")
        assert error.kind == AuthErrorKind.TOO_MANY_ATTEMPTS
        blocked = await services.mfa.verify_code(principal.id, pyotp.TOTP(secret).now())
        assert blocked.kind == AuthErrorKind.TOO_MANY_ATTEMPTS
        assert blocked.payload == {"retry_after_seconds": 300}

    async def test_lockout_lifts(self, services, principal, clock):
        secret, _ = await _enrol(services, principal)
        for _ in range(5):
            await services.mfa.verify_code(principal.id, "000000")
        clock.advance(seconds=301)
        assert await services.mfa.verify_code(principal.id, pyotp.TOTP(secret).now()) is None

    async def test_not_enrolled(self, services, principal):
        error = await services.mfa.verify_code(principal.id, "123456")
        assert error.kind == AuthErrorKind.MFA_CODE_INVALID


class TestChallengeTokens:
    async def test_consumed_token_cannot_be_replayed(self, services):
        token = services.issuer.issue_purpose_token("p-1", PURPOSE_MFA_VERIFICATION)
        payload = await services.mfa.resolve_token(token, PURPOSE_MFA_VERIFICATION)
        assert payload["sub"] == "p-1"
        await services.mfa.consume_token(payload)
        assert await services.mfa.resolve_token(token, PURPOSE_MFA_VERIFICATION) is None

    async def test_wrong_purpose(self, services):
        token = services.issuer.issue_purpose_token("p-1", PURPOSE_MFA_SETUP)
        assert await services.mfa.resolve_token(token, PURPOSE_MFA_VERIFICATION) is None
