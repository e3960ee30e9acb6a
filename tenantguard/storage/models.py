from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (older rows) to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ELEVATED = "elevated"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.ELEVATED: 2,
    Severity.CRITICAL: 3,
}


class TenantStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class RefreshState(str, Enum):
    ACTIVE = "active"
    ROTATED = "rotated"
    REVOKED = "revoked"
    EXPIRED = "expired"


class RotationOutcome(str, Enum):
    ROTATED = "rotated"
    ALREADY_REVOKED = "already_revoked"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


ROTATED_REASON = "rotated"


@dataclass
class User:
    id: str
    email: str
    role: str = "student"
    # None only for the platform operator role; anything else is a data bug
    tenant_id: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Tenant:
    id: str
    status: TenantStatus = TenantStatus.ACTIVE

    @property
    def allows_login(self) -> bool:
        return self.status == TenantStatus.ACTIVE


@dataclass
class RefreshToken:
    id: str
    user_id: str
    chain_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    issuing_ip: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    replaced_by_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl: timedelta,
        *,
        chain_id: Optional[str] = None,
        issuing_ip: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        issued = now or utcnow()
        token_id = str(uuid.uuid4())
        return cls(
            id=token_id,
            user_id=user_id,
            # The chain root's id names the whole rotation chain
            chain_id=chain_id or token_id,
            token_hash=token_hash,
            issued_at=issued,
            expires_at=issued + ttl,
            issuing_ip=issuing_ip,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= as_utc(self.expires_at)

    def state(self, now: Optional[datetime] = None) -> RefreshState:
        if self.revoked_at is not None:
            if self.revoked_reason == ROTATED_REASON:
                return RefreshState.ROTATED
            return RefreshState.REVOKED
        if self.is_expired(now):
            return RefreshState.EXPIRED
        return RefreshState.ACTIVE


@dataclass
class AuditRecord:
    action: str
    severity: Severity
    actor_user_id: Optional[str] = None
    actor_tenant_id: Optional[str] = None
    target_tenant_id: Optional[str] = None
    target_resource_type: Optional[str] = None
    target_resource_id: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class RevocationEntry:
    token_id: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= as_utc(self.expires_at)


@dataclass
class PasswordResetToken:
    token_hash: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None
