"""Explicit tenant assignment for users left without one by a data migration.

Request handling never assigns a tenant. Repairing such users is an operator
action: it names one target tenant, runs only inside a short declared window,
and writes an audit record that must be acknowledged before each user is
touched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditSink
from tenantguard.service.errors import AuditWriteFailed, ValidationError
from tenantguard.storage.common import Store
from tenantguard.storage.models import AuditRecord, Severity, as_utc, utcnow

logger = get_logger(__name__)

MAX_WINDOW = timedelta(hours=72)


@dataclass
class AssignmentResult:
    tenant_id: str
    assigned: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    dry_run: bool = False


class TenantAssignment:
    def __init__(self, store: Store, audit: AuditSink, privileged_role: str) -> None:
        self.store = store
        self.audit = audit
        self.privileged_role = privileged_role

    def _check_window(self, not_after: datetime, now: datetime) -> None:
        not_after = as_utc(not_after)
        if now >= not_after:
            raise ValidationError("assignment window has closed", detail={"not_after": not_after.isoformat()})
        if not_after - now > MAX_WINDOW:
            raise ValidationError(
                "assignment window too long",
                detail={"max_hours": int(MAX_WINDOW.total_seconds() // 3600)},
            )

    async def run(
        self,
        tenant_id: str,
        *,
        operator: str,
        reason: str,
        not_after: datetime,
        user_ids: Optional[Sequence[str]] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> AssignmentResult:
        now = now or utcnow()
        self._check_window(not_after, now)
        if not operator or not reason:
            raise ValidationError("operator and reason are required")
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None or not tenant.allows_login:
            raise ValidationError("target tenant missing or not active", detail={"tenant_id": tenant_id})

        if user_ids is None:
            candidates = self.store.list_users_without_tenant(self.privileged_role)
        else:
            candidates = [u for u in (self.store.get_user(uid) for uid in user_ids) if u]
            missing = set(user_ids) - {u.id for u in candidates}
            if missing:
                logger.warning("tenant_assignment_unknown_users", user_ids=sorted(missing))

        result = AssignmentResult(tenant_id=tenant_id, dry_run=dry_run)
        for user in candidates:
            if user.tenant_id or user.role == self.privileged_role:
                # never reassign, never give the operator role a tenant
                result.skipped.append(user.id)
                continue
            if dry_run:
                result.assigned.append(user.id)
                continue
            acked = await self.audit.record(
                AuditRecord(
                    action="tenant-assigned",
                    severity=Severity.WARNING,
                    actor_user_id=operator,
                    target_tenant_id=tenant_id,
                    target_resource_type="user",
                    target_resource_id=user.id,
                    detail={"reason": reason, "not_after": as_utc(not_after).isoformat()},
                )
            )
            if not acked:
                raise AuditWriteFailed(
                    "tenant assignment not audited; stopping",
                    detail={"user_id": user.id, "assigned_so_far": len(result.assigned)},
                )
            self.store.assign_user_tenant(user.id, tenant_id)
            result.assigned.append(user.id)

        logger.info(
            "tenant_assignment_completed",
            tenant_id=tenant_id,
            operator=operator,
            assigned=len(result.assigned),
            skipped=len(result.skipped),
            dry_run=dry_run,
        )
        return result
