#!/usr/bin/env python3
"""Bootstrap an administrative identity for the OTP login flow.

The administrative flow never creates accounts, so at least one admin must
exist before anyone can log in through it.

Usage:
    # Using environment variables:
    ADMIN_IDENTIFIER=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --identifier +84912345678 --password SecurePassword123! --role super-admin

Environment Variables:
    ADMIN_IDENTIFIER: Email or phone number of the admin identity
    ADMIN_PASSWORD: Password for the first factor (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    identifier: str, password: str, role: str = "admin", dry_run: bool = False
) -> dict:
    """Create an admin identity or promote an existing one.

    Returns:
        dict with user_id, identifier, role and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from otpgate.service.identifiers import validate_identifier
    from otpgate.service.runtime import get_runtime
    from otpgate.storage.models import IdentifierKind, Role

    target_role = Role(role)
    if not target_role.is_privileged:
        raise ValueError("role must be admin or super-admin")
    identifier, kind = validate_identifier(identifier)

    runtime = get_runtime()
    password_hash = runtime.hasher.hash_password(password)
    existing = runtime.store.find_user(identifier, kind)

    if existing:
        if existing.role == target_role:
            print(f"{identifier} already has role {target_role.value} (id: {existing.id})")
            return {
                "user_id": existing.id,
                "identifier": identifier,
                "role": target_role.value,
                "status": "already_admin",
            }

        if dry_run:
            print(f"[DRY RUN] Would promote {identifier} to {target_role.value}")
            return {"user_id": existing.id, "identifier": identifier, "status": "dry_run"}

        runtime.store.update_user_role(existing.id, target_role)
        runtime.store.set_password_hash(existing.id, password_hash)
        print(f"Promoted {identifier} to {target_role.value} (id: {existing.id})")
        return {
            "user_id": existing.id,
            "identifier": identifier,
            "role": target_role.value,
            "status": "promoted",
        }

    if dry_run:
        print(f"[DRY RUN] Would create {target_role.value}: {identifier}")
        return {"user_id": None, "identifier": identifier, "status": "dry_run"}

    user = runtime.store.create_user(
        phone=identifier if kind == IdentifierKind.PHONE else None,
        email=identifier if kind == IdentifierKind.EMAIL else None,
        role=target_role,
        password_hash=password_hash,
        status=True,
    )
    print(f"Created {target_role.value}: {identifier} (id: {user.id})")
    return {
        "user_id": user.id,
        "identifier": identifier,
        "role": target_role.value,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrative identity for otpgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--identifier",
        default=os.environ.get("ADMIN_IDENTIFIER"),
        help="Admin email or phone (or set ADMIN_IDENTIFIER env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--role",
        choices=["admin", "super-admin"],
        default="admin",
        help="Role to grant",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.identifier:
        print("Error: --identifier or ADMIN_IDENTIFIER environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/otpgate-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.identifier, args.password, args.role, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin identity created successfully!")
        print(f"  Identifier: {result['identifier']}")
        print(f"  Role: {result['role']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting identity promoted!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - identity already has that role.")


if __name__ == "__main__":
    main()
