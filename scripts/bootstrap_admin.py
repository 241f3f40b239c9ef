#!/usr/bin/env python3
"""Create an admin account, or promote an existing account to admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (the memory store is used when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters from at least three character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Imported late so the environment is settled before settings load
    from tokenfence.service.auth import normalize_email
    from tokenfence.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == "admin":
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, "admin")
        # Credentials issued under the old role must not keep working
        await runtime.ledger.fence_user(existing.id, "role_change")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user, _ = await runtime.auth.register(email, password, role="admin")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for tokenfence",
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
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created admin user: {result['email']} (id: {result['user_id']})")
    elif status == "promoted":
        print(f"Promoted existing user {result['email']} to admin (id: {result['user_id']})")
    elif status == "already_admin":
        print(f"User {result['email']} is already an admin; no changes made")
    else:
        print(f"[DRY RUN] Would create or promote admin user: {result['email']}")


if __name__ == "__main__":
    main()
