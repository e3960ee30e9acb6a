from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

DEFAULT_PRIVILEGED_ROLE = "platform_admin"


@dataclass(frozen=True)
class Principal:
    """Verified identity attached to a request. Built only from a checked token."""

    user_id: str
    tenant_id: Optional[str]
    role: str
    session_id: str
    token_id: str
    expires_at: datetime
    privileged_role: str = field(default=DEFAULT_PRIVILEGED_ROLE, repr=False, compare=False)

    def is_privileged(self) -> bool:
        return self.role == self.privileged_role

    def has_tenant(self) -> bool:
        return bool(self.tenant_id)
