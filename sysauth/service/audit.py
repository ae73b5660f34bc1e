from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from sysauth.logging import get_logger
from sysauth.storage.models import AuditEntry, new_id

logger = get_logger(__name__)


class AuditStore(Protocol):
    def add_audit_entry(self, entry: AuditEntry) -> None: ...

    def list_audit_entries(
        self, action: Optional[str] = None, target_id: Optional[str] = None
    ) -> List[AuditEntry]: ...


class AuditAction:
    LOGIN = "auth.login"
    LOGIN_FAILED = "auth.login_failed"
    LOGIN_BLOCKED = "auth.login_blocked"
    LOGIN_NEW_LOCATION = "auth.login_new_location"
    ACCOUNT_LOCKED = "auth.account_locked"
    MFA_CHALLENGE_SENT = "auth.mfa_challenge_sent"
    MFA_SETUP_REQUIRED = "auth.mfa_setup_required"
    MFA_VERIFIED = "auth.mfa_verified"
    MFA_FAILED = "auth.mfa_failed"
    MFA_ENABLED = "auth.mfa_enabled"
    MAGIC_LINK_REQUESTED = "auth.magic_link_requested"
    PASSKEY_LOGIN = "auth.passkey_login"
    LOGOUT = "auth.logout"
    TOKEN_REFRESHED = "auth.token_refreshed"
    DEVICE_APPROVAL_REQUIRED = "device.approval_required"
    DEVICE_APPROVAL_RESENT = "device.approval_resent"
    DEVICE_APPROVED = "device.approved"
    DEVICE_APPROVAL_FAILED = "device.approval_failed"
    DEVICE_DENIED = "device.denied"
    DEVICE_SUSPICIOUS = "device.suspicious"
    DEVICE_REVOKED = "device.revoked"
    PERMISSIONS_UPDATED = "principal.permissions_updated"
    PRINCIPAL_DEACTIVATED = "principal.deactivated"
    PRINCIPAL_UNLOCKED = "principal.unlocked"


class AuditService:
    """Record audit entries in the store and mirror them to the structured log."""

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    async def log_with_context(
        self,
        action: str,
        actor_id: Optional[str],
        target_id: Optional[str],
        entity_type: Optional[str],
        entity_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = AuditEntry(
            id=new_id(),
            action=action,
            actor_id=actor_id,
            target_id=target_id,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )
        self.store.add_audit_entry(entry)
        logger.info(
            "audit_event",
            action=action,
            actor_id=actor_id,
            target_id=target_id,
            entity_type=entity_type,
            entity_id=entity_id,
        )
