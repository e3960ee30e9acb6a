#!/usr/bin/env python3
"""Bootstrap the platform operator account, or a school's first admin.

Usage:
    # Platform operator (no tenant):
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD='Secure-Passw0rd!' python scripts/bootstrap_admin.py

    # First admin of a school, creating the tenant if needed:
    python scripts/bootstrap_admin.py --email head@school.example --password 'Secure-Passw0rd!' \
        --tenant-id school-42 --create-tenant

Environment Variables:
    ADMIN_EMAIL: Email for the account
    ADMIN_PASSWORD: Password for the account (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (uses a file-backed memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

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


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    tenant_id: Optional[str] = None,
    create_tenant: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the account if it does not exist yet.

    Returns:
        dict with user_id, email, role, tenant_id and status
    """
    from tenantguard.service.runtime import get_runtime
    from tenantguard.storage.models import AuditRecord, Severity

    runtime = get_runtime()
    role = runtime.settings.tenant_admin_role if tenant_id else runtime.settings.privileged_role

    existing = runtime.store.get_user_by_email(email)
    if existing:
        print(f"User {email} already exists (id: {existing.id}, role: {existing.role})")
        return {"user_id": existing.id, "email": email, "role": existing.role,
                "tenant_id": existing.tenant_id, "status": "exists"}

    if tenant_id and runtime.store.get_tenant(tenant_id) is None:
        if not create_tenant:
            raise ValueError(f"tenant {tenant_id} does not exist; pass --create-tenant")
        if not dry_run:
            runtime.store.create_tenant(tenant_id)
            print(f"Created tenant {tenant_id}")

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {email}")
        return {"user_id": None, "email": email, "role": role, "tenant_id": tenant_id,
                "status": "dry_run"}

    user = runtime.store.create_user(email, role=role, tenant_id=tenant_id)
    runtime.auth.save_password(user.id, password)
    await runtime.audit.record(
        AuditRecord(
            action="account-bootstrapped",
            severity=Severity.WARNING,
            actor_user_id=user.id,
            actor_tenant_id=tenant_id,
            target_tenant_id=tenant_id,
            target_resource_type="user",
            target_resource_id=user.id,
            detail={"role": role},
        )
    )
    print(f"Created {role} user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "role": role, "tenant_id": tenant_id,
            "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an operator or school admin for tenantguard",
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
    parser.add_argument("--tenant-id", help="Create a school admin in this tenant instead of an operator")
    parser.add_argument("--create-tenant", action="store_true", help="Create the tenant if missing")
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using file-backed memory store (set DATABASE_URL for Postgres)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                tenant_id=args.tenant_id,
                create_tenant=args.create_tenant,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Role: {result['role']}")
        if result["tenant_id"]:
            print(f"  Tenant: {result['tenant_id']}")
    elif result["status"] == "exists":
        print("\nNo changes made.")


if __name__ == "__main__":
    main()
