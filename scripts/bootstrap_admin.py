#!/usr/bin/env python3
"""Bootstrap an admin account for testing and initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePass123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePass123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (8+ chars, 3 of 4 character classes)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

PLACEHOLDER_ADDRESS = {
    "street": "Head office",
    "ward": "N/A",
    "district": "N/A",
    "city": "N/A",
}


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    name: str = "Administrator",
    phone: str = "0000000000",
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with account_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here so config is read after env defaults are applied
    from stayhub.service import validation
    from stayhub.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(validation.normalize_email(email))

    if existing:
        if existing.role == "admin":
            print(f"Account {email} already exists as admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}

        runtime.sessions.admin_update_account(existing.id, role="admin", is_verified=True)
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    result = await runtime.sessions.register(
        name, email, phone, password, PLACEHOLDER_ADDRESS
    )
    account_id = result.account["id"]
    runtime.sessions.admin_update_account(account_id, role="admin", is_verified=True)

    print(f"Created admin account: {email} (id: {account_id})")
    return {"account_id": account_id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for StayHub",
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
    parser.add_argument("--name", default="Administrator", help="Display name")
    parser.add_argument(
        "--phone", default="0000000000", help="10-digit contact phone number"
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

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/stayhub-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from stayhub.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                name=args.name,
                phone=args.phone,
                dry_run=args.dry_run,
            )
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        if exc.detail:
            print(f"       {exc.detail}")
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
