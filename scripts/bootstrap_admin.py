#!/usr/bin/env python3
"""Create or promote the first administrator account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secur3!Admin' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secur3!Admin'

Environment Variables:
    ADMIN_EMAIL: Email for the administrator
    ADMIN_PASSWORD: Password (must satisfy the password policy)
    ADMIN_ROLE: Role to grant (defaults to BOOTSTRAP_ROLE, "super_admin")
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: str, role: str | None = None, dry_run: bool = False) -> dict:
    """Create ``email`` with ``role`` or add the role to an existing account.

    Returns a dict with account_id, email and status (created, promoted,
    already_admin or dry_run).
    """
    # Imported late so the environment defaults below apply to settings
    from iamcore.service.runtime import get_runtime

    runtime = get_runtime()
    role = (role or runtime.settings.bootstrap_role).lower()
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if role in existing.roles:
            print(f"Account {email} already has role {role} (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant {role} to existing account {email}")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_roles(existing.id, [*existing.roles, role])
        print(f"Granted {role} to {email} (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    runtime.auth.policy.validate(password)
    if dry_run:
        print(f"[DRY RUN] Would create {role} account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, password)
    account = runtime.store.get_account(result.user.id)
    if role not in account.roles:
        runtime.store.update_roles(account.id, [*account.roles, role])
    await runtime.notifier.drain()
    print(f"Created {role} account: {email} (id: {account.id})")
    return {
        "account_id": account.id,
        "email": email,
        "status": "created",
        "access_token": result.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--role", default=os.environ.get("ADMIN_ROLE"))
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/iamcore-bootstrap"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from iamcore.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.role, args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message} {exc.detail or ''}".rstrip())
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted.")
    elif result["status"] == "already_admin":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
