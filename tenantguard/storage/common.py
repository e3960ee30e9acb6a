"""Storage contract shared by the memory and postgres implementations."""

from __future__ import annotations

import asyncio
import functools
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol, TypeVar

from tenantguard.storage.errors import StoreUnavailable
from tenantguard.storage.models import (
    AuditRecord,
    PasswordResetToken,
    RefreshToken,
    RotationOutcome,
    Tenant,
    User,
)

T = TypeVar("T")


class Store(Protocol):
    def verify_connection(self) -> None: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users_without_tenant(self, exclude_role: str) -> List[User]: ...

    def assign_user_tenant(self, user_id: str, tenant_id: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self, token_id: str, successor: RefreshToken, now: Optional[datetime] = None
    ) -> RotationOutcome: ...

    def revoke_refresh_chain(
        self, chain_id: str, reason: str, now: Optional[datetime] = None
    ) -> int: ...

    def revoke_chain_tip(
        self, chain_id: str, reason: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]: ...

    def list_user_chain_ids(self, user_id: str, *, active_only: bool = True) -> List[str]: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: str, now: Optional[datetime] = None
    ) -> int: ...

    def purge_refresh_tokens(self, older_than: datetime) -> int: ...

    def append_audit_record(self, record: AuditRecord) -> AuditRecord: ...

    def list_audit_records(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditRecord]: ...

    def save_password_reset_token(self, token: PasswordResetToken) -> None: ...

    def consume_password_reset_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[str]: ...


async def call_store(timeout: float, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking store call off the event loop, bounded by ``timeout``.

    Raises:
        StoreUnavailable: if the call does not finish in time.
    """
    bound = functools.partial(func, *args, **kwargs)
    try:
        return await asyncio.wait_for(asyncio.to_thread(bound), timeout)
    except asyncio.TimeoutError as exc:
        name = getattr(func, "__name__", repr(func))
        raise StoreUnavailable(f"{name} timed out after {timeout}s") from exc
