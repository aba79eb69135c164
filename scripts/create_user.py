#!/usr/bin/env python3
"""Seed an account so it can sign in through the security API.

Usage:
    # Using environment variables:
    SEED_EMAIL=medico@example.com SEED_PASSWORD=Clave-Segura-2024 python scripts/create_user.py --role medico

    # Or with command line args:
    python scripts/create_user.py --email medico@example.com --password Clave-Segura-2024 --role medico

Environment Variables:
    SEED_EMAIL: Email for the account
    SEED_PASSWORD: Password for the account (must meet complexity requirements)
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

ROLES = ("paciente", "medico", "farmacia", "laboratorio", "clinica", "seguro", "ambulancia")


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def create_user(email: str, password: str, role: str, dry_run: bool = False) -> dict:
    """Create the account unless one already exists for ``email``.

    Returns:
        dict with user_id, email, role and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from medguard.service.runtime import get_runtime

    runtime = get_runtime()

    existing_user = runtime.store.get_user_by_email(email)
    if existing_user:
        print(f"User {email} already exists as {existing_user.role} (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "email": existing_user.email,
            "role": existing_user.role,
            "status": "exists",
        }

    if dry_run:
        print(f"[DRY RUN] Would create {role} account: {email}")
        return {"user_id": None, "email": email, "role": role, "status": "dry_run"}

    user = runtime.credentials.register_user(email, password, role=role)
    print(f"Created {role} account: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "role": role, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed an account for MedGuard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SEED_EMAIL"),
        help="Account email (or set SEED_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="Account password (or set SEED_PASSWORD env var)",
    )
    parser.add_argument("--role", choices=ROLES, default="paciente")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SEED_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or SEED_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/medguard-seed"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = create_user(args.email, args.password, args.role, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Role: {result['role']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - account already exists.")


if __name__ == "__main__":
    main()
