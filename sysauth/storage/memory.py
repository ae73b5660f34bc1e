from __future__ import annotations

import base64
import hashlib
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from sysauth.logging import get_logger
from sysauth.storage.errors import ConstraintViolation, RecordNotFound
from sysauth.storage.models import (
    AuditEntry,
    Device,
    DeviceStatus,
    LoginPattern,
    MagicLinkToken,
    MfaConfig,
    Passkey,
    Principal,
    RefreshToken,
    utcnow,
)


def _copy_device(device: Device) -> Device:
    return replace(device, risk_factors=list(device.risk_factors))


class MemoryStore:
    """In-memory backing store implementing every narrow store protocol.

    Records are copied on the way in and out so callers cannot mutate stored
    state behind the store's back; device and principal updates are
    compare-and-swap on their ``version`` field.
    """

    def __init__(self, *, mfa_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.permissions: Dict[str, List[str]] = {}
        self.mfa_configs: Dict[str, MfaConfig] = {}
        self.devices: Dict[str, Device] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.login_patterns: Dict[str, LoginPattern] = {}
        self.magic_links: Dict[str, MagicLinkToken] = {}
        self.passkeys: Dict[str, Passkey] = {}
        self.audit_entries: List[AuditEntry] = []
        # RLock so store methods may call each other while holding it
        self._data_lock = threading.RLock()
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str) -> Fernet:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        return Fernet(self._derive_cipher_key(key_material))

    def verify_connection(self) -> None:
        return None

    # -- principals -------------------------------------------------------

    def create_principal(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        password_hash: Optional[str] = None,
        permissions: Optional[List[str]] = None,
        preferred_language: str = "en",
    ) -> Principal:
        principal = Principal.new(
            email,
            first_name=first_name,
            last_name=last_name,
            password_hash=password_hash,
            preferred_language=preferred_language,
        )
        with self._data_lock:
            if self._find_principal_id(principal.email):
                raise ConstraintViolation(
                    "principal already exists", {"field": "email"}
                )
            self.principals[principal.id] = principal
            self.permissions[principal.id] = sorted(set(permissions or []))
        return replace(principal)

    def _find_principal_id(self, email: str) -> Optional[str]:
        normalized = email.strip().lower()
        for principal in self.principals.values():
            if principal.email == normalized:
                return principal.id
        return None

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal) if principal else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self._find_principal_id(email)
            return replace(self.principals[principal_id]) if principal_id else None

    def save_principal(self, principal: Principal) -> Principal:
        """Unconditional write; still bumps the version so pending CAS writers lose."""
        with self._data_lock:
            current = self.principals.get(principal.id)
            if current is None:
                raise RecordNotFound("principal", principal.id)
            stored = replace(principal, updated_at=utcnow(), version=current.version + 1)
            self.principals[principal.id] = stored
            return replace(stored)

    def update_principal(self, principal: Principal, *, expected_version: int) -> bool:
        """Persist ``principal`` only if the stored row is still at ``expected_version``."""
        with self._data_lock:
            current = self.principals.get(principal.id)
            if current is None:
                raise RecordNotFound("principal", principal.id)
            if current.version != expected_version:
                self.logger.info(
                    "principal_stale_write_rejected",
                    principal_id=principal.id,
                    expected_version=expected_version,
                    current_version=current.version,
                )
                return False
            stored = replace(principal, updated_at=utcnow(), version=expected_version + 1)
            self.principals[principal.id] = stored
            principal.version = stored.version
            return True

    def list_principals(self) -> List[Principal]:
        with self._data_lock:
            return [replace(p) for p in self.principals.values()]

    def get_permissions(self, principal_id: str) -> List[str]:
        with self._data_lock:
            return list(self.permissions.get(principal_id, []))

    def set_permissions(self, principal_id: str, permissions: List[str]) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise RecordNotFound("principal", principal_id)
            self.permissions[principal_id] = sorted(set(permissions))

    # -- mfa ---------------------------------------------------------------

    def get_mfa_config(self, principal_id: str) -> Optional[MfaConfig]:
        with self._data_lock:
            stored = self.mfa_configs.get(principal_id)
            if not stored:
                return None
            try:
                secret = self._mfa_cipher.decrypt(stored.secret.encode()).decode()
            except InvalidToken:
                self.logger.error("mfa_secret_decrypt_failed", principal_id=principal_id)
                return None
            return replace(
                stored, secret=secret, backup_code_hashes=list(stored.backup_code_hashes)
            )

    def save_mfa_config(self, config: MfaConfig) -> None:
        encrypted = self._mfa_cipher.encrypt(config.secret.encode()).decode()
        with self._data_lock:
            self.mfa_configs[config.principal_id] = replace(
                config,
                secret=encrypted,
                backup_code_hashes=list(config.backup_code_hashes),
            )

    # -- devices -----------------------------------------------------------

    def add_device(self, device: Device) -> Device:
        with self._data_lock:
            self._check_single_live(device)
            stored = _copy_device(device)
            self.devices[device.id] = stored
            return _copy_device(stored)

    def _check_single_live(self, device: Device) -> None:
        """At most one non-revoked row per (principal, device id)."""
        if device.status == DeviceStatus.REVOKED:
            return
        for other in self.devices.values():
            if (
                other.id != device.id
                and other.principal_id == device.principal_id
                and other.device_id == device.device_id
                and other.status != DeviceStatus.REVOKED
            ):
                raise ConstraintViolation(
                    "device already registered", {"device_id": device.device_id}
                )

    def get_device(self, device_row_id: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_row_id)
            return _copy_device(device) if device else None

    def list_devices(
        self, principal_id: str, status: Optional[DeviceStatus] = None
    ) -> List[Device]:
        with self._data_lock:
            devices = [
                _copy_device(d)
                for d in self.devices.values()
                if d.principal_id == principal_id and (status is None or d.status == status)
            ]
        devices.sort(key=lambda d: d.updated_at, reverse=True)
        return devices

    def find_device_by_approval_hash(self, token_hash: str) -> Optional[Device]:
        with self._data_lock:
            for device in self.devices.values():
                if device.approval_token_hash == token_hash:
                    return _copy_device(device)
        return None

    def update_device(self, device: Device, *, expected_version: int) -> bool:
        """Persist ``device`` only if the stored row is still at ``expected_version``."""
        with self._data_lock:
            current = self.devices.get(device.id)
            if current is None:
                raise RecordNotFound("device", device.id)
            if current.version != expected_version:
                self.logger.info(
                    "device_stale_write_rejected",
                    device_id=device.id,
                    expected_version=expected_version,
                    current_version=current.version,
                )
                return False
            self._check_single_live(device)
            stored = _copy_device(device)
            stored.version = expected_version + 1
            self.devices[device.id] = stored
            device.version = stored.version
            return True

    # -- refresh tokens ----------------------------------------------------

    def add_refresh_token(self, token: RefreshToken) -> None:
        with self._data_lock:
            self.refresh_tokens[token.id] = replace(token)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            for token in self.refresh_tokens.values():
                if token.token_hash == token_hash:
                    return replace(token)
        return None

    def save_refresh_token(self, token: RefreshToken) -> None:
        with self._data_lock:
            if token.id not in self.refresh_tokens:
                raise RecordNotFound("refresh_token", token.id)
            self.refresh_tokens[token.id] = replace(token)

    def list_refresh_tokens(
        self,
        principal_id: Optional[str] = None,
        *,
        device_id: Optional[str] = None,
        active_only: bool = True,
        now: Optional[datetime] = None,
    ) -> List[RefreshToken]:
        now = now or utcnow()
        with self._data_lock:
            return [
                replace(t)
                for t in self.refresh_tokens.values()
                if (principal_id is None or t.principal_id == principal_id)
                and (device_id is None or t.device_id == device_id)
                and (not active_only or t.is_active(now))
            ]

    # -- login patterns ----------------------------------------------------

    def get_login_pattern(self, principal_id: str) -> Optional[LoginPattern]:
        with self._data_lock:
            pattern = self.login_patterns.get(principal_id)
            if not pattern:
                return None
            return replace(
                pattern,
                typical_countries=list(pattern.typical_countries),
                typical_cities=list(pattern.typical_cities),
                typical_hours=list(pattern.typical_hours),
                device_types=list(pattern.device_types),
            )

    def save_login_pattern(self, pattern: LoginPattern) -> None:
        with self._data_lock:
            self.login_patterns[pattern.principal_id] = pattern

    # -- magic links -------------------------------------------------------

    def add_magic_link(self, token: MagicLinkToken) -> None:
        with self._data_lock:
            self.magic_links[token.id] = replace(token)

    def get_magic_link_by_hash(self, token_hash: str) -> Optional[MagicLinkToken]:
        with self._data_lock:
            for token in self.magic_links.values():
                if token.token_hash == token_hash:
                    return replace(token)
        return None

    def save_magic_link(self, token: MagicLinkToken) -> None:
        with self._data_lock:
            self.magic_links[token.id] = replace(token)

    def list_magic_links(self, principal_id: str) -> List[MagicLinkToken]:
        with self._data_lock:
            return [
                replace(t) for t in self.magic_links.values() if t.principal_id == principal_id
            ]

    # -- passkeys ----------------------------------------------------------

    def add_passkey(self, passkey: Passkey) -> None:
        with self._data_lock:
            if self.get_passkey_by_credential_id(passkey.credential_id):
                raise ConstraintViolation(
                    "passkey already registered", {"credential_id": passkey.credential_id}
                )
            self.passkeys[passkey.id] = replace(passkey)

    def get_passkey_by_credential_id(self, credential_id: str) -> Optional[Passkey]:
        with self._data_lock:
            for passkey in self.passkeys.values():
                if passkey.credential_id == credential_id:
                    return replace(passkey)
        return None

    def save_passkey(self, passkey: Passkey) -> None:
        with self._data_lock:
            self.passkeys[passkey.id] = replace(passkey)

    # -- audit -------------------------------------------------------------

    def add_audit_entry(self, entry: AuditEntry) -> None:
        with self._data_lock:
            self.audit_entries.append(entry)

    def list_audit_entries(
        self, action: Optional[str] = None, target_id: Optional[str] = None
    ) -> List[AuditEntry]:
        with self._data_lock:
            return [
                e
                for e in self.audit_entries
                if (action is None or e.action == action)
                and (target_id is None or e.target_id == target_id)
            ]
