from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Protocol, Union

from sysauth.logging import get_logger
from sysauth.service.audit import AuditAction
from sysauth.service.collaborators import AuditLog
from sysauth.service.device_approval import DeviceApprovalWorkflow, DeviceStore
from sysauth.service.errors import AuthError, AuthErrorKind
from sysauth.service.lockout import LockoutGuard
from sysauth.service.permissions import SYSTEM_PERMISSIONS, PermissionCache
from sysauth.service.principals import commit_principal_event
from sysauth.service.reauth import ForceReauthCoordinator
from sysauth.service.tokens import SessionTokenIssuer
from sysauth.service.transitions import (
    Deactivated,
    Effect,
    PermissionsChanged,
    PrincipalEvent,
    Unlocked,
)
from sysauth.storage.models import Device, DeviceStatus, Principal, utcnow

logger = get_logger(__name__)


class AdminPrincipalStore(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def update_principal(self, principal: Principal, *, expected_version: int) -> bool: ...

    def get_permissions(self, principal_id: str) -> List[str]: ...

    def set_permissions(self, principal_id: str, permissions: List[str]) -> None: ...


class AdminService:
    """Administrative changes that must invalidate live sessions.

    Each mutation runs the matching principal transition and then performs its
    effects: permission cache eviction, force-reauth flags on every session,
    refresh token revocation.
    """

    def __init__(
        self,
        *,
        principals: AdminPrincipalStore,
        devices: DeviceStore,
        approvals: DeviceApprovalWorkflow,
        issuer: SessionTokenIssuer,
        reauth: ForceReauthCoordinator,
        permissions: PermissionCache,
        lockout: LockoutGuard,
        audit: AuditLog,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.principals = principals
        self.devices = devices
        self.approvals = approvals
        self.issuer = issuer
        self.reauth = reauth
        self.permissions = permissions
        self.lockout = lockout
        self.audit = audit
        self._clock = clock or utcnow

    def _principal(self, principal_id: str) -> Union[Principal, AuthError]:
        principal = self.principals.get_principal(principal_id)
        if principal is None:
            return AuthError(AuthErrorKind.NOT_FOUND, "principal not found")
        return principal

    async def _apply(self, principal: Principal, event: PrincipalEvent) -> Principal:
        transition = commit_principal_event(self.principals, principal, event)
        principal = transition.state
        effects = transition.effects
        if Effect.INVALIDATE_PERMISSIONS in effects:
            await self.permissions.invalidate(principal.id)
        if Effect.REVOKE_ALL_SESSIONS in effects:
            for device in self.devices.list_devices(principal.id):
                if device.status != DeviceStatus.REVOKED:
                    revoked = await self.approvals.revoke(device)
                    if isinstance(revoked, AuthError):
                        # a concurrent writer won; the marker still has to land
                        await self.reauth.mark_session_revoked(device.id)
        if Effect.FORCE_REAUTH_ALL_SESSIONS in effects:
            await self.reauth.set_flag_for_all_sessions(principal.id)
        if Effect.REVOKE_REFRESH_TOKENS in effects:
            self.issuer.revoke_all_for_principal(principal.id)
        if Effect.RESET_LOCKOUT in effects:
            await self.lockout.reset(principal.email)
        return principal

    async def update_permissions(
        self, actor_id: str, principal_id: str, permissions: List[str]
    ) -> Union[List[str], AuthError]:
        principal = self._principal(principal_id)
        if isinstance(principal, AuthError):
            return principal
        unknown = sorted(set(permissions) - set(SYSTEM_PERMISSIONS))
        if unknown:
            return AuthError(
                AuthErrorKind.FORBIDDEN,
                "unknown permissions requested",
                {"unknown": unknown},
            )
        before = set(self.principals.get_permissions(principal.id))
        after = sorted(set(permissions))
        self.principals.set_permissions(principal.id, after)
        await self._apply(principal, PermissionsChanged())
        await self.audit.log_with_context(
            AuditAction.PERMISSIONS_UPDATED,
            actor_id,
            principal.id,
            "Principal",
            principal.id,
            {
                "added": sorted(set(after) - before),
                "removed": sorted(before - set(after)),
            },
        )
        logger.info(
            "permissions_updated", principal_id=principal.id, count=len(after)
        )
        return after

    async def deactivate_principal(
        self, actor_id: str, principal_id: str
    ) -> Union[Principal, AuthError]:
        if actor_id == principal_id:
            return AuthError(AuthErrorKind.FORBIDDEN, "you cannot deactivate yourself")
        principal = self._principal(principal_id)
        if isinstance(principal, AuthError):
            return principal
        principal = await self._apply(principal, Deactivated(at=self._clock()))
        await self.audit.log_with_context(
            AuditAction.PRINCIPAL_DEACTIVATED, actor_id, principal.id, "Principal", principal.id
        )
        return principal

    async def unlock_principal(
        self, actor_id: str, principal_id: str
    ) -> Union[Principal, AuthError]:
        principal = self._principal(principal_id)
        if isinstance(principal, AuthError):
            return principal
        principal = await self._apply(principal, Unlocked())
        await self.audit.log_with_context(
            AuditAction.PRINCIPAL_UNLOCKED, actor_id, principal.id, "Principal", principal.id
        )
        return principal

    async def revoke_device(
        self, actor_id: str, session_id: str
    ) -> Union[Device, AuthError]:
        device = self.devices.get_device(session_id)
        if device is None:
            return AuthError(AuthErrorKind.NOT_FOUND, "device not found")
        revoked = await self.approvals.revoke(device)
        if isinstance(revoked, AuthError):
            return revoked
        await self.audit.log_with_context(
            AuditAction.DEVICE_REVOKED, actor_id, device.principal_id, "Device", device.id
        )
        return revoked

    def list_devices(self, principal_id: str) -> Union[List[Device], AuthError]:
        principal = self._principal(principal_id)
        if isinstance(principal, AuthError):
            return principal
        return self.devices.list_devices(principal.id)
