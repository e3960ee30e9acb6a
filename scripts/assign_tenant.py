#!/usr/bin/env python3
"""Assign a tenant to users that a data migration left without one.

This is the only supported way to give such users a tenant. The run must
declare a deadline (at most 72 hours ahead) after which it refuses to start,
and every assignment is written to the audit trail first.

Usage:
    python scripts/assign_tenant.py --tenant-id school-42 --operator ops@example.com \
        --reason "INC-1234 import without school" --not-after 2026-10-20T18:00:00+00:00 \
        --all-unassigned

    python scripts/assign_tenant.py --tenant-id school-42 --operator ops@example.com \
        --reason "manual fix" --not-after 2026-10-19T12:00:00Z --user-id <uuid> --user-id <uuid>
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_deadline(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value}")
    if parsed.tzinfo is None:
        raise argparse.ArgumentTypeError("deadline must carry a UTC offset")
    return parsed


async def assign(args: argparse.Namespace) -> int:
    from tenantguard.service.errors import ServiceError
    from tenantguard.service.migration import TenantAssignment
    from tenantguard.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.audit.start()
    job = TenantAssignment(runtime.store, runtime.audit, runtime.settings.privileged_role)
    try:
        result = await job.run(
            args.tenant_id,
            operator=args.operator,
            reason=args.reason,
            not_after=args.not_after,
            user_ids=None if args.all_unassigned else args.user_ids,
            dry_run=args.dry_run,
        )
    except ServiceError as exc:
        print(f"Error: {exc.message} {exc.detail or ''}".rstrip())
        return 1
    finally:
        await runtime.close()

    prefix = "[DRY RUN] " if result.dry_run else ""
    print(f"{prefix}Assigned {len(result.assigned)} user(s) to tenant {result.tenant_id}")
    for user_id in result.assigned:
        print(f"  + {user_id}")
    if result.skipped:
        print(f"Skipped {len(result.skipped)} user(s) that already had a tenant or are operators")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Assign a tenant to users without one (time-boxed, audited)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--tenant-id", required=True, help="Tenant to assign")
    parser.add_argument("--operator", required=True, help="Who is running this (recorded in audit)")
    parser.add_argument("--reason", required=True, help="Ticket or justification (recorded in audit)")
    parser.add_argument(
        "--not-after",
        required=True,
        type=_parse_deadline,
        help="ISO-8601 deadline with offset; the run refuses to start after it",
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--user-id", dest="user_ids", action="append", help="User to assign (repeatable)")
    target.add_argument(
        "--all-unassigned", action="store_true", help="Every non-operator user without a tenant"
    )
    parser.add_argument("--dry-run", action="store_true", help="List affected users only")
    args = parser.parse_args()
    sys.exit(asyncio.run(assign(args)))


if __name__ == "__main__":
    main()
