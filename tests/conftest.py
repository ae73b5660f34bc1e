import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps lockout counters and session markers per test (MemoryCache)
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sysauth.config import Settings  # noqa: E402
from sysauth.service.admin import AdminService  # noqa: E402
from sysauth.service.audit import AuditService  # noqa: E402
from sysauth.service.collaborators import VerifiedAssertion  # noqa: E402
from sysauth.service.credentials import Argon2Hasher  # noqa: E402
from sysauth.service.device_approval import DeviceApprovalWorkflow  # noqa: E402
from sysauth.service.device_info import StaticGeoLocator, UserAgentParser  # noqa: E402
from sysauth.service.device_trust import DeviceTrustEvaluator  # noqa: E402
from sysauth.service.lockout import LockoutGuard  # noqa: E402
from sysauth.service.magic_link import MagicLinkService  # noqa: E402
from sysauth.service.mfa import MfaGate  # noqa: E402
from sysauth.service.orchestrator import AuthOrchestrator, LoginContext  # noqa: E402
from sysauth.service.permissions import PermissionCache  # noqa: E402
from sysauth.service.reauth import ForceReauthCoordinator  # noqa: E402
from sysauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from sysauth.service.tokens import SessionTokenIssuer  # noqa: E402
from sysauth.storage.memory import MemoryStore  # noqa: E402
from sysauth.storage.memory_cache import MemoryCache  # noqa: E402
from sysauth.storage.models import GeoLocation  # noqa: E402

PASSWORD = "Correct-Horse-Battery-9"
CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"

IP_MOUNTAIN_VIEW = "8.8.8.8"
IP_NEW_YORK = "8.8.4.4"
IP_SYDNEY = "1.1.1.1"
IP_LONDON = "81.2.69.160"

GEO_TABLE = {
    IP_MOUNTAIN_VIEW: GeoLocation("United States", "US", "Mountain View", 37.386, -122.0838),
    IP_NEW_YORK: GeoLocation("United States", "US", "New York", 40.7128, -74.006),
    IP_SYDNEY: GeoLocation("Australia", "AU", "Sydney", -33.8688, 151.2093),
    IP_LONDON: GeoLocation("United Kingdom", "GB", "London", 51.5074, -0.1278),
}


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeClock:
    """Settable UTC clock shared by services and the memory cache."""

    def __init__(self, start=None):
        self.current = start or datetime.now(timezone.utc).replace(microsecond=0)

    def now(self):
        return self.current

    def timestamp(self):
        return self.current.timestamp()

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


class RecordingNotifier:
    """Collects outgoing notifications instead of sending email."""

    def __init__(self):
        self.sent = []
        self.approvals = []
        self.fail = False

    async def send(self, to, subject, template, variables, language="en"):
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.sent.append(
            {"to": to, "subject": subject, "template": template, "variables": variables}
        )

    async def send_device_approval_required(
        self, email, name, approval_token, approval_code, device_meta, risk_score, language="en"
    ):
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.approvals.append(
            {
                "email": email,
                "approval_token": approval_token,
                "approval_code": approval_code,
                "device_meta": device_meta,
                "risk_score": risk_score,
            }
        )

    def templates(self):
        return [message["template"] for message in self.sent]

    @property
    def last_approval(self):
        return self.approvals[-1]


class StubCaptcha:
    def __init__(self, passes=True):
        self.passes = passes
        self.calls = []

    async def validate_required(self, token, action, remote_ip):
        self.calls.append((token, action))
        return self.passes


class StubPasskeyVerifier:
    """Accepts any assertion whose ``signature`` field equals ``valid``."""

    def __init__(self):
        self.next_sign_count = 1

    def verify_assertion(self, assertion, *, challenge, public_key, stored_sign_count):
        if assertion.get("signature") != "valid":
            return None
        return VerifiedAssertion(
            credential_id=assertion.get("credential_id") or assertion.get("id"),
            sign_count=max(stored_sign_count + 1, self.next_sign_count),
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(jwt_secret="unit-test-secret", redis_url="", test_mode=True)


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock.timestamp)


@pytest.fixture
def services(settings, store, cache, clock):
    """Every service wired against the memory store, memory cache and fake clock."""
    issuer = SessionTokenIssuer(store, settings, clock=clock.now)
    reauth = ForceReauthCoordinator(cache, store, settings)
    permissions = PermissionCache(cache, store, ttl_minutes=settings.permission_cache_ttl_minutes)
    lockout = LockoutGuard(cache, settings, clock=clock.now)
    mfa = MfaGate(store, cache, issuer, settings)
    trust = DeviceTrustEvaluator(store, store, settings, clock=clock.now)
    approvals = DeviceApprovalWorkflow(store, cache, reauth, issuer, settings, clock=clock.now)
    magic_links = MagicLinkService(
        store, ttl_minutes=settings.magic_link_ttl_minutes, clock=clock.now
    )
    audit = AuditService(store)
    hasher = Argon2Hasher()
    notifier = RecordingNotifier()
    captcha = StubCaptcha()
    geo = StaticGeoLocator(GEO_TABLE)
    passkey_verifier = StubPasskeyVerifier()
    auth = AuthOrchestrator(
        principals=store,
        devices=store,
        passkeys=store,
        cache=cache,
        lockout=lockout,
        mfa=mfa,
        trust=trust,
        approvals=approvals,
        issuer=issuer,
        reauth=reauth,
        permissions=permissions,
        magic_links=magic_links,
        hasher=hasher,
        notifier=notifier,
        captcha=captcha,
        audit=audit,
        geo=geo,
        device_info=UserAgentParser(),
        passkey_verifier=passkey_verifier,
        settings=settings,
        clock=clock.now,
    )
    admin = AdminService(
        principals=store,
        devices=store,
        approvals=approvals,
        issuer=issuer,
        reauth=reauth,
        permissions=permissions,
        lockout=lockout,
        audit=audit,
        clock=clock.now,
    )
    return SimpleNamespace(
        settings=settings,
        store=store,
        cache=cache,
        clock=clock,
        issuer=issuer,
        reauth=reauth,
        permissions=permissions,
        lockout=lockout,
        mfa=mfa,
        trust=trust,
        approvals=approvals,
        magic_links=magic_links,
        audit=audit,
        hasher=hasher,
        notifier=notifier,
        captcha=captcha,
        geo=geo,
        passkey_verifier=passkey_verifier,
        auth=auth,
        admin=admin,
    )


@pytest.fixture
def make_principal(services):
    def _make(email="admin@example.com", password=PASSWORD, permissions=None, **kwargs):
        return services.store.create_principal(
            email,
            first_name=kwargs.pop("first_name", "Ada"),
            last_name=kwargs.pop("last_name", "Lovelace"),
            password_hash=services.hasher.hash(password),
            permissions=permissions or [],
            **kwargs,
        )

    return _make


@pytest.fixture
def login_ctx():
    def _ctx(device_id="laptop-1", ip_address=IP_MOUNTAIN_VIEW, user_agent=CHROME_WINDOWS, **kwargs):
        return LoginContext(
            ip_address=ip_address, user_agent=user_agent, device_id=device_id, **kwargs
        )

    return _ctx
