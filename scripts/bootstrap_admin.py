#!/usr/bin/env python3
"""Bootstrap a system administrator holding every ``system:*`` permission.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin principal
    ADMIN_PASSWORD: Password for the admin principal (must meet complexity requirements)

The principal has no MFA yet; its first login returns a setup token because
privileged accounts must enrol before a session is issued.
"""
from __future__ import annotations

import argparse
import os
import sys


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(store, hasher, email: str, password: str, *, dry_run: bool = False) -> dict:
    """Create the admin principal, or grant the full permission set to an existing one."""
    from sysauth.service.permissions import SYSTEM_PERMISSIONS

    existing = store.get_principal_by_email(email)
    if existing:
        if set(SYSTEM_PERMISSIONS) <= set(store.get_permissions(existing.id)):
            return {"principal_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            return {"principal_id": existing.id, "email": existing.email, "status": "dry_run"}
        store.set_permissions(existing.id, SYSTEM_PERMISSIONS)
        return {"principal_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        return {"principal_id": None, "email": email, "status": "dry_run"}

    principal = store.create_principal(
        email,
        first_name="System",
        last_name="Administrator",
        password_hash=hasher.hash(password),
        permissions=SYSTEM_PERMISSIONS,
    )
    return {"principal_id": principal.id, "email": principal.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a system administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from sysauth.service.runtime import get_runtime
    from sysauth.storage.errors import ConstraintViolation

    runtime = get_runtime()
    try:
        result = bootstrap_admin(
            runtime.store, runtime.hasher, args.email, args.password, dry_run=args.dry_run
        )
    except ConstraintViolation as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    print(f"{result['status']}: {result['email']} (id: {result['principal_id']})")


if __name__ == "__main__":
    main()
