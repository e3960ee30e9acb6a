from __future__ import annotations

from typing import Iterable, Optional

from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditSink
from tenantguard.service.errors import MissingTenant, SignatureInvalid
from tenantguard.service.principal import Principal
from tenantguard.service.tokens import TokenService
from tenantguard.storage.models import AuditRecord, Severity

logger = get_logger(__name__)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class TenantIsolationGate:
    """Establishes who is asking. Never looks at the resource being asked for."""

    def __init__(
        self,
        tokens: TokenService,
        audit: AuditSink,
        exempt_paths: Iterable[str],
    ) -> None:
        self.tokens = tokens
        self.audit = audit
        self.exempt_paths = frozenset(exempt_paths)

    def is_exempt(self, path: str) -> bool:
        return path in self.exempt_paths

    async def authorize(
        self, path: str, authorization: Optional[str]
    ) -> Optional[Principal]:
        """Return the request's principal, ``None`` for exempt paths, or raise.

        Raises:
            AuthenticationError: no token, or the token failed verification.
            MissingTenant: a non-privileged principal carries no tenant id.
        """
        if self.is_exempt(path):
            return None
        raw = extract_bearer(authorization)
        if raw is None:
            raise SignatureInvalid("missing bearer token")
        principal = await self.tokens.verify_access_token(raw)
        if principal.is_privileged():
            return principal
        if not principal.has_tenant():
            logger.error(
                "principal_missing_tenant",
                user_id=principal.user_id,
                role=principal.role,
                path=path,
            )
            await self.audit.record(
                AuditRecord(
                    action="missing-tenant",
                    severity=Severity.WARNING,
                    actor_user_id=principal.user_id,
                    detail={"path": path, "role": principal.role},
                )
            )
            raise MissingTenant(
                "principal has no tenant", detail={"user_id": principal.user_id}
            )
        return principal
