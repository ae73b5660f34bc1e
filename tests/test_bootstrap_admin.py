"""Tests for scripts/bootstrap_admin.py."""

import importlib.util
from pathlib import Path

import pytest

from sysauth.service.permissions import SYSTEM_PERMISSIONS

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestValidatePassword:
    @pytest.mark.parametrize(
        "password,ok",
        [
            ("SecurePassword123!", True),
            ("lowercase-only-but-long", False),
            ("Short1!", False),
            ("NoDigitsButSymbols!!", True),
        ],
    )
    def test_complexity(self, bootstrap, password, ok):
        assert bootstrap.validate_password(password) is ok


class TestBootstrapAdmin:
    def test_creates_admin(self, bootstrap, store, services):
        result = bootstrap.bootstrap_admin(
            store, services.hasher, "root@example.com", "SecurePassword123!"
        )
        assert result["status"] == "created"
        assert store.get_permissions(result["principal_id"]) == sorted(SYSTEM_PERMISSIONS)

    def test_promotes_existing(self, bootstrap, store, services):
        existing = store.create_principal("root@example.com", permissions=["reports:read"])
        result = bootstrap.bootstrap_admin(
            store, services.hasher, "root@example.com", "SecurePassword123!"
        )
        assert result == {
            "principal_id": existing.id,
            "email": "root@example.com",
            "status": "promoted",
        }
        assert set(SYSTEM_PERMISSIONS) <= set(store.get_permissions(existing.id))

    def test_idempotent(self, bootstrap, store, services):
        bootstrap.bootstrap_admin(store, services.hasher, "root@example.com", "SecurePassword123!")
        again = bootstrap.bootstrap_admin(
            store, services.hasher, "root@example.com", "SecurePassword123!"
        )
        assert again["status"] == "already_admin"

    def test_dry_run_changes_nothing(self, bootstrap, store, services):
        result = bootstrap.bootstrap_admin(
            store, services.hasher, "root@example.com", "SecurePassword123!", dry_run=True
        )
        assert result["status"] == "dry_run"
        assert store.get_principal_by_email("root@example.com") is None
