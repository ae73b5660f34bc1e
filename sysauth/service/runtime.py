from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from sysauth.config import get_settings, reset_settings_cache
from sysauth.logging import get_logger
from sysauth.service.admin import AdminService
from sysauth.service.audit import AuditService
from sysauth.service.captcha import CaptchaService
from sysauth.service.collaborators import RejectingPasskeyVerifier
from sysauth.service.credentials import Argon2Hasher
from sysauth.service.device_approval import DeviceApprovalWorkflow
from sysauth.service.device_info import StaticGeoLocator, UserAgentParser
from sysauth.service.device_trust import DeviceTrustEvaluator
from sysauth.service.email import EmailService
from sysauth.service.lockout import LockoutGuard
from sysauth.service.magic_link import MagicLinkService
from sysauth.service.mfa import MfaGate
from sysauth.service.orchestrator import AuthOrchestrator
from sysauth.service.permissions import PermissionCache
from sysauth.service.reauth import ForceReauthCoordinator
from sysauth.service.tokens import SessionTokenIssuer
from sysauth.storage.memory import MemoryStore
from sysauth.storage.memory_cache import MemoryCache
from sysauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL before it is logged.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore(
            mfa_encryption_key=self.settings.mfa_encryption_key or self.settings.jwt_secret
        )

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a pytest event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for lockout counters, force-reauth flags and "
                    "revocation markers; start Redis or set TEST_MODE=true/"
                    "ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; lockouts and session "
                    "markers are per-process only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        settings = self.settings
        self.hasher = Argon2Hasher()
        self.audit = AuditService(self.store)
        self.issuer = SessionTokenIssuer(self.store, settings)
        self.reauth = ForceReauthCoordinator(self.cache, self.store, settings)
        self.permissions = PermissionCache(
            self.cache, self.store, ttl_minutes=settings.permission_cache_ttl_minutes
        )
        self.lockout = LockoutGuard(self.cache, settings)
        self.mfa = MfaGate(self.store, self.cache, self.issuer, settings)
        self.trust = DeviceTrustEvaluator(self.store, self.store, settings)
        self.approvals = DeviceApprovalWorkflow(
            self.store, self.cache, self.reauth, self.issuer, settings
        )
        self.magic_links = MagicLinkService(
            self.store, ttl_minutes=settings.magic_link_ttl_minutes
        )
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            approval_expiry_minutes=settings.device_approval_expiry_minutes,
        )
        self.captcha = CaptchaService(
            enabled=settings.captcha_enabled,
            secret=settings.captcha_secret,
            verify_url=settings.captcha_verify_url,
        )
        self.geo = StaticGeoLocator()
        self.device_info = UserAgentParser()
        self.passkey_verifier = RejectingPasskeyVerifier()

        self.auth = AuthOrchestrator(
            principals=self.store,
            devices=self.store,
            passkeys=self.store,
            cache=self.cache,
            lockout=self.lockout,
            mfa=self.mfa,
            trust=self.trust,
            approvals=self.approvals,
            issuer=self.issuer,
            reauth=self.reauth,
            permissions=self.permissions,
            magic_links=self.magic_links,
            hasher=self.hasher,
            notifier=self.email,
            captcha=self.captcha,
            audit=self.audit,
            geo=self.geo,
            device_info=self.device_info,
            passkey_verifier=self.passkey_verifier,
            settings=settings,
        )
        self.admin = AdminService(
            principals=self.store,
            devices=self.store,
            approvals=self.approvals,
            issuer=self.issuer,
            reauth=self.reauth,
            permissions=self.permissions,
            lockout=self.lockout,
            audit=self.audit,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=not isinstance(self.cache, MemoryCache),
            email_configured=self.email.is_configured,
            captcha_enabled=settings.captcha_enabled,
        )

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            elif isinstance(runtime.cache, RedisCache):
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
