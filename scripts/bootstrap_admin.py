#!/usr/bin/env python3
"""Create the first library administrator, or promote an existing account.

Usage:
    ADMIN_EMAIL=admin@library.example ADMIN_USERNAME=admin ADMIN_PASSWORD=Str0ngPassword \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@library.example --username admin \
        --password Str0ngPassword

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_USERNAME: Username for a newly created admin account
    ADMIN_PASSWORD: Password (at least 8 characters with upper, lower and digit)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, username: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with account_id, email, and status
    """
    # Import here so the environment is settled before settings load
    from kalibro.service.runtime import get_runtime
    from kalibro.storage.models import AccountRole

    runtime = get_runtime()
    existing = runtime.accounts.get_by_email(email)

    if existing:
        if existing.role == AccountRole.ADMIN.value:
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.accounts.update_role(existing.id, AccountRole.ADMIN.value)
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.accounts.create_account(
        username=username,
        email=email,
        password_hash=runtime.auth.hash_password(password),
        role=AccountRole.ADMIN.value,
        name="Administrator",
    )
    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Kalibro",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username for a new account (or set ADMIN_USERNAME env var)",
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

    from kalibro.service.auth import password_strength_error

    weakness = password_strength_error(args.password)
    if weakness:
        print(f"Error: {weakness}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("JWT_REFRESH_SECRET"):
        os.environ["JWT_REFRESH_SECRET"] = secrets.token_urlsafe(48)
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.username, args.password, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
