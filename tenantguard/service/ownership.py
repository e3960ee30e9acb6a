"""Per-resource tenant ownership decisions.

Every handler that touches a tenant-scoped object goes through
:class:`OwnershipValidator` right before the read or write. Same-tenant access
is free; privileged cross-tenant access is allowed and always audited;
anything else is denied and audited as critical.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

from tenantguard.config import AuditFailurePolicy
from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditSink
from tenantguard.service.errors import (
    AuditWriteFailed,
    CrossTenantDenied,
    ForbiddenError,
    MissingTenant,
    ValidationError,
)
from tenantguard.service.principal import Principal
from tenantguard.storage.models import AuditRecord, Severity

logger = get_logger(__name__)

T = TypeVar("T")


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


def _tenant_attr(resource: Any) -> Optional[str]:
    if isinstance(resource, dict):
        return resource.get("tenant_id")
    return getattr(resource, "tenant_id", None)


class OwnershipValidator:
    def __init__(
        self,
        audit: AuditSink,
        failure_policy: AuditFailurePolicy = AuditFailurePolicy.FAIL_OPEN,
    ) -> None:
        self.audit = audit
        self.failure_policy = AuditFailurePolicy(failure_policy)

    async def check(
        self,
        principal: Principal,
        resource_tenant_id: Optional[str],
        resource_type: str,
        resource_id: Optional[str] = None,
    ) -> Decision:
        if principal.has_tenant() and principal.tenant_id == resource_tenant_id:
            return Decision.ALLOW

        if principal.is_privileged():
            acked = await self.audit.record(
                AuditRecord(
                    action="privileged-access",
                    severity=Severity.ELEVATED,
                    actor_user_id=principal.user_id,
                    actor_tenant_id=principal.tenant_id,
                    target_tenant_id=resource_tenant_id,
                    target_resource_type=resource_type,
                    target_resource_id=resource_id,
                    detail={"role": principal.role, "session_id": principal.session_id},
                )
            )
            if not acked and self.failure_policy == AuditFailurePolicy.FAIL_CLOSED:
                # the sink already raised the alert
                raise AuditWriteFailed(
                    "privileged access not audited",
                    detail={"target_tenant_id": resource_tenant_id},
                )
            return Decision.ALLOW

        await self.audit.record(
            AuditRecord(
                action="cross-tenant-denied",
                severity=Severity.CRITICAL,
                actor_user_id=principal.user_id,
                actor_tenant_id=principal.tenant_id,
                target_tenant_id=resource_tenant_id,
                target_resource_type=resource_type,
                target_resource_id=resource_id,
                detail={"role": principal.role},
            )
        )
        return Decision.DENY

    async def enforce(
        self,
        principal: Principal,
        resource_tenant_id: Optional[str],
        resource_type: str,
        resource_id: Optional[str] = None,
    ) -> None:
        decision = await self.check(principal, resource_tenant_id, resource_type, resource_id)
        if decision == Decision.DENY:
            raise CrossTenantDenied(
                "cross-tenant access denied",
                detail={
                    "actor_tenant_id": principal.tenant_id,
                    "target_tenant_id": resource_tenant_id,
                },
            )

    async def load_scoped(
        self,
        principal: Principal,
        resource: Optional[T],
        resource_type: str,
        resource_id: Optional[str] = None,
        *,
        tenant_of: Callable[[Any], Optional[str]] = _tenant_attr,
    ) -> T:
        """Return ``resource`` if ``principal`` may see it.

        A missing resource and a resource owned by another tenant produce the
        same error, so callers cannot test for existence.
        """
        if resource is None:
            raise ForbiddenError("resource not found", detail={"resource_type": resource_type})
        await self.enforce(principal, tenant_of(resource), resource_type, resource_id)
        return resource

    async def stamp_tenant(
        self,
        principal: Principal,
        payload: Dict[str, Any],
        resource_type: str,
        target_tenant_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return a copy of ``payload`` owned by the principal's tenant.

        A ``tenant_id`` already present in ``payload`` is discarded. Privileged
        principals must name the target tenant explicitly.
        """
        stamped = dict(payload)
        supplied = stamped.pop("tenant_id", None)
        if supplied is not None:
            logger.warning(
                "caller_supplied_tenant_ignored",
                user_id=principal.user_id,
                resource_type=resource_type,
            )
        if principal.is_privileged():
            if not target_tenant_id:
                raise ValidationError("target tenant required for privileged create")
            await self.enforce(principal, target_tenant_id, resource_type)
            stamped["tenant_id"] = target_tenant_id
            return stamped
        if not principal.has_tenant():
            raise MissingTenant("principal has no tenant", detail={"user_id": principal.user_id})
        if target_tenant_id and target_tenant_id != principal.tenant_id:
            await self.enforce(principal, target_tenant_id, resource_type)
        stamped["tenant_id"] = principal.tenant_id
        return stamped
