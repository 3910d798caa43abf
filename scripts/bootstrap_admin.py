#!/usr/bin/env python3
"""Create the first ADMIN account for a tenant, or promote an existing user.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Password-1' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure-Password-1' \
        --tenant acme --name "Ops Admin"

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    SHARED_FS_ROOT: Where the record store persists its state
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    email: str,
    password: str,
    *,
    tenant_id: str = "default",
    name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here so configuration is read after env vars are set
    from pimify_identity.service.runtime import get_runtime
    from pimify_identity.storage.models import Role, UserStatus

    runtime = get_runtime()
    credentials = runtime.credentials
    existing = credentials.get_by_email(email).data

    if existing:
        if existing.tenant_id != tenant_id:
            raise ValueError(f"{email} belongs to tenant {existing.tenant_id}, not {tenant_id}")
        if existing.role == Role.ADMIN and existing.status == UserStatus.ACTIVE:
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        credentials.update(
            existing.id,
            role=Role.ADMIN.value,
            status=UserStatus.ACTIVE.value,
            locked_at=None,
            failed_login_attempts=0,
            first_failed_login_at=None,
        ).unwrap()
        if not credentials.has_password(existing.id):
            credentials.admin_reset_password(existing.id, password).unwrap()
        print(f"Promoted existing user {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = credentials.create(
        email,
        password,
        role=Role.ADMIN.value,
        name=name,
        tenant_id=tenant_id,
    ).unwrap()
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Pimify",
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
    parser.add_argument("--tenant", default=os.environ.get("DEFAULT_TENANT_ID", "default"))
    parser.add_argument("--name", default=None, help="Display name for a new account")
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

    from pimify_identity.service.credentials import validate_password

    problem = validate_password(args.password)
    if problem:
        print(f"Error: {problem}")
        sys.exit(1)

    # The record store lives on disk; Redis is only needed by the server
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(
            args.email.strip().lower(),
            args.password,
            tenant_id=args.tenant,
            name=args.name,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print("  Enable two-factor authentication at first login.")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
