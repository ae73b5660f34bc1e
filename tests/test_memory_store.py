"""MemoryStore uniqueness rules, copy semantics and compare-and-swap writes."""

from dataclasses import replace
from datetime import timedelta

import pytest

from sysauth.storage.errors import ConstraintViolation, RecordNotFound
from sysauth.storage.memory import MemoryStore
from sysauth.storage.models import (
    AuditEntry,
    Device,
    DeviceStatus,
    MagicLinkToken,
    MfaConfig,
    Passkey,
    Principal,
    new_id,
    utcnow,
)


def _trusted(principal_id, device_id="laptop-1"):
    device = Device.new(principal_id, device_id)
    device.status = DeviceStatus.TRUSTED
    return device


class TestPrincipals:
    def test_email_is_normalized_and_unique(self, store):
        created = store.create_principal(" Ops@Example.com ", permissions=["b", "a", "a"])
        assert created.email == "ops@example.com"
        assert store.get_permissions(created.id) == ["a", "b"]
        with pytest.raises(ConstraintViolation) as exc:
            store.create_principal("OPS@example.com")
        assert exc.value.detail == {"field": "email"}
        assert store.get_principal_by_email("ops@EXAMPLE.com").id == created.id

    def test_reads_are_copies(self, store):
        created = store.create_principal("ops@example.com")
        fetched = store.get_principal(created.id)
        fetched.is_active = False
        assert store.get_principal(created.id).is_active is True

    def test_save_unknown_principal(self, store):
        with pytest.raises(RecordNotFound):
            store.save_principal(Principal.new("ghost@example.com"))
        with pytest.raises(RecordNotFound):
            store.set_permissions("missing", ["system:users:read"])

    def test_principal_compare_and_swap(self, store):
        created = store.create_principal("ops@example.com")
        first = store.get_principal(created.id)
        second = store.get_principal(created.id)

        first.is_active = False
        assert store.update_principal(first, expected_version=0)
        assert first.version == 1

        second.failed_login_attempts = 3
        assert not store.update_principal(second, expected_version=0)
        stored = store.get_principal(created.id)
        assert stored.is_active is False
        assert stored.failed_login_attempts == 0

    def test_unconditional_save_still_bumps_version(self, store):
        created = store.create_principal("ops@example.com")
        store.save_principal(replace(created, mfa_enabled=True))
        assert not store.update_principal(created, expected_version=0)
        assert store.get_principal(created.id).version == 1


class TestDevices:
    def test_single_trusted_row_per_device_id(self, store):
        store.add_device(_trusted("p-1"))
        with pytest.raises(ConstraintViolation):
            store.add_device(_trusted("p-1"))
        # other principals and other device ids are unaffected
        store.add_device(_trusted("p-2"))
        store.add_device(_trusted("p-1", "phone-1"))
        assert len(store.list_devices("p-1", DeviceStatus.TRUSTED)) == 2

    def test_compare_and_swap(self, store):
        device = store.add_device(Device.new("p-1", "laptop-1"))
        first = store.get_device(device.id)
        second = store.get_device(device.id)

        first.status = DeviceStatus.TRUSTED
        assert store.update_device(first, expected_version=0)
        assert first.version == 1

        second.status = DeviceStatus.REVOKED
        assert not store.update_device(second, expected_version=0)
        assert store.get_device(device.id).status == DeviceStatus.TRUSTED

    def test_update_missing_device(self, store):
        with pytest.raises(RecordNotFound):
            store.update_device(Device.new("p-1", "laptop-1"), expected_version=0)

    def test_second_live_row_is_rejected(self, store):
        store.add_device(_trusted("p-1"))
        with pytest.raises(ConstraintViolation) as exc:
            store.add_device(Device.new("p-1", "laptop-1"))
        assert exc.value.detail == {"device_id": "laptop-1"}

    def test_reviving_revoked_row_violates_constraint(self, store):
        store.add_device(_trusted("p-1"))
        revoked = Device.new("p-1", "laptop-1")
        revoked.status = DeviceStatus.REVOKED
        store.add_device(revoked)
        revoked.status = DeviceStatus.PENDING_APPROVAL
        with pytest.raises(ConstraintViolation):
            store.update_device(revoked, expected_version=0)

    def test_risk_factors_are_copied(self, store):
        device = Device.new("p-1", "laptop-1")
        device.risk_factors = ["new_device"]
        stored = store.add_device(device)
        stored.risk_factors.append("new_country")
        assert store.get_device(device.id).risk_factors == ["new_device"]

    def test_find_by_approval_hash(self, store):
        device = Device.new("p-1", "laptop-1")
        device.approval_token_hash = "abc"
        store.add_device(device)
        assert store.find_device_by_approval_hash("abc").id == device.id
        assert store.find_device_by_approval_hash("zzz") is None


class TestSecretsAndTokens:
    def test_mfa_secret_round_trip(self, store):
        store.save_mfa_config(MfaConfig("p-1", "JBSWY3DPEHPK3PXP", enabled=True))
        assert store.mfa_configs["p-1"].secret != "JBSWY3DPEHPK3PXP"
        assert store.get_mfa_config("p-1").secret == "JBSWY3DPEHPK3PXP"

    def test_mfa_secret_unreadable_with_other_key(self, store):
        store.save_mfa_config(MfaConfig("p-1", "JBSWY3DPEHPK3PXP"))
        other = MemoryStore(mfa_encryption_key="another-key")
        other.mfa_configs = store.mfa_configs
        assert other.get_mfa_config("p-1") is None

    def test_encryption_key_required(self):
        with pytest.raises(RuntimeError):
            MemoryStore(mfa_encryption_key="")

    def test_magic_link_lookup(self, store):
        link = MagicLinkToken(new_id(), "p-1", "hash-1", utcnow() + timedelta(minutes=15))
        store.add_magic_link(link)
        assert store.get_magic_link_by_hash("hash-1").principal_id == "p-1"
        assert [t.id for t in store.list_magic_links("p-1")] == [link.id]

    def test_passkey_credential_unique(self, store):
        store.add_passkey(Passkey(new_id(), "p-1", "cred-1", "pk"))
        with pytest.raises(ConstraintViolation):
            store.add_passkey(Passkey(new_id(), "p-2", "cred-1", "pk"))
        assert store.get_passkey_by_credential_id("cred-1").principal_id == "p-1"


class TestAudit:
    def test_filter_by_action_and_target(self, store):
        store.add_audit_entry(AuditEntry(new_id(), "LOGIN_SUCCESS", target_id="p-1"))
        store.add_audit_entry(AuditEntry(new_id(), "LOGIN_FAILED", target_id="p-1"))
        store.add_audit_entry(AuditEntry(new_id(), "LOGIN_SUCCESS", target_id="p-2"))
        assert len(store.list_audit_entries("LOGIN_SUCCESS")) == 2
        assert len(store.list_audit_entries(target_id="p-1")) == 2
        assert len(store.list_audit_entries("LOGIN_SUCCESS", "p-2")) == 1
