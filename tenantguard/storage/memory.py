from __future__ import annotations

import json
import os
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from tenantguard.logging import get_logger
from tenantguard.storage.errors import ConstraintViolation
from tenantguard.storage.models import (
    ROTATED_REASON,
    AuditRecord,
    PasswordResetToken,
    RefreshToken,
    RotationOutcome,
    Severity,
    Tenant,
    TenantStatus,
    User,
    as_utc,
    utcnow,
)


class MemoryStore:
    """In-memory backing store with a JSON snapshot under ``fs_root``.

    All mutations happen under one re-entrant lock, which makes refresh-token
    rotation a compare-and-swap: the check for "still active" and the write of
    the successor can never interleave with another rotation.
    """

    def __init__(self, fs_root: str = "/tmp/tenantguard", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._refresh_by_hash: Dict[str, str] = {}
        self.audit_records: List[AuditRecord] = []
        self.password_resets: Dict[str, PasswordResetToken] = {}
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        if self.persist and not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    # tenants
    def create_tenant(
        self, tenant_id: Optional[str] = None, status: TenantStatus = TenantStatus.ACTIVE
    ) -> Tenant:
        with self._data_lock:
            tid = tenant_id or str(uuid.uuid4())
            if tid in self.tenants:
                raise ConstraintViolation("tenant already exists", {"tenant_id": tid})
            tenant = Tenant(id=tid, status=TenantStatus(status))
            self.tenants[tid] = tenant
            self._persist_state()
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def set_tenant_status(self, tenant_id: str, status: TenantStatus) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.status = TenantStatus(status)
            self._persist_state()
            return tenant

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = "student",
        tenant_id: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if tenant_id is not None and tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                role=role,
                tenant_id=tenant_id,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def list_users_without_tenant(self, exclude_role: str) -> List[User]:
        with self._data_lock:
            return [
                u for u in self.users.values() if not u.tenant_id and u.role != exclude_role
            ]

    def assign_user_tenant(self, user_id: str, tenant_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            user.tenant_id = tenant_id
            self._persist_state()
            return user

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh chains
    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token_hash in self._refresh_by_hash:
                raise ConstraintViolation("refresh token hash collision")
            self.refresh_tokens[token.id] = token
            self._refresh_by_hash[token.token_hash] = token.id
            self._persist_state()
            return replace(token)

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            return replace(token) if token else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._refresh_by_hash.get(token_hash)
            token = self.refresh_tokens.get(token_id) if token_id else None
            return replace(token) if token else None

    def list_refresh_chain(self, chain_id: str) -> List[RefreshToken]:
        with self._data_lock:
            chain = [replace(t) for t in self.refresh_tokens.values() if t.chain_id == chain_id]
        return sorted(chain, key=lambda t: as_utc(t.issued_at))

    def rotate_refresh_token(
        self, token_id: str, successor: RefreshToken, now: Optional[datetime] = None
    ) -> RotationOutcome:
        now = now or utcnow()
        with self._data_lock:
            current = self.refresh_tokens.get(token_id)
            if current is None:
                return RotationOutcome.NOT_FOUND
            if current.revoked_at is not None:
                return RotationOutcome.ALREADY_REVOKED
            if current.is_expired(now):
                return RotationOutcome.EXPIRED
            current.revoked_at = now
            current.revoked_reason = ROTATED_REASON
            current.replaced_by_id = successor.id
            self.refresh_tokens[successor.id] = replace(successor)
            self._refresh_by_hash[successor.token_hash] = successor.id
            self._persist_state()
            return RotationOutcome.ROTATED

    def revoke_refresh_chain(
        self, chain_id: str, reason: str, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.chain_id == chain_id and token.revoked_at is None:
                    token.revoked_at = now
                    token.revoked_reason = reason
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def revoke_chain_tip(
        self, chain_id: str, reason: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        now = now or utcnow()
        with self._data_lock:
            tip = next(
                (
                    t
                    for t in self.refresh_tokens.values()
                    if t.chain_id == chain_id and t.revoked_at is None
                ),
                None,
            )
            if tip is None:
                return None
            tip.revoked_at = now
            tip.revoked_reason = reason
            self._persist_state()
            return replace(tip)

    def list_user_chain_ids(self, user_id: str, *, active_only: bool = True) -> List[str]:
        with self._data_lock:
            return sorted(
                {
                    t.chain_id
                    for t in self.refresh_tokens.values()
                    if t.user_id == user_id and (not active_only or t.revoked_at is None)
                }
            )

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: str, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and token.revoked_at is None:
                    token.revoked_at = now
                    token.revoked_reason = reason
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def purge_refresh_tokens(self, older_than: datetime) -> int:
        """Delete revoked or expired links issued before ``older_than``."""
        with self._data_lock:
            stale = [
                t
                for t in self.refresh_tokens.values()
                if as_utc(t.issued_at) < older_than
                and (t.revoked_at is not None or t.is_expired())
            ]
            for token in stale:
                self.refresh_tokens.pop(token.id, None)
                self._refresh_by_hash.pop(token.token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # audit
    def append_audit_record(self, record: AuditRecord) -> AuditRecord:
        with self._data_lock:
            self.audit_records.append(replace(record, detail=dict(record.detail)))
            self._persist_state()
            return record

    def list_audit_records(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditRecord]:
        with self._data_lock:
            records = [
                r
                for r in self.audit_records
                if tenant_id is None
                or r.target_tenant_id == tenant_id
                or r.actor_tenant_id == tenant_id
            ]
        records.sort(key=lambda r: as_utc(r.timestamp), reverse=True)
        return records[:limit]

    # password reset
    def save_password_reset_token(self, token: PasswordResetToken) -> None:
        with self._data_lock:
            self.password_resets[token.token_hash] = token
            self._persist_state()

    def consume_password_reset_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[str]:
        now = now or utcnow()
        with self._data_lock:
            token = self.password_resets.get(token_hash)
            if not token or token.used_at is not None or now >= as_utc(token.expires_at):
                return None
            token.used_at = now
            self._persist_state()
            return token.user_id

    # snapshot
    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif hasattr(value, "value"):
                data[key] = value.value
        return data

    @staticmethod
    def _parse_times(data: dict, *keys: str) -> dict:
        for key in keys:
            if data.get(key):
                data[key] = as_utc(datetime.fromisoformat(data[key]))
        return data

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "tenants": [self._serialize(t) for t in self.tenants.values()],
            "users": [self._serialize(u) for u in self.users.values()],
            "credentials": [
                {"user_id": uid, "password_hash": creds[0], "password_algo": creds[1]}
                for uid, creds in self.credentials.items()
            ],
            "refresh_tokens": [self._serialize(t) for t in self.refresh_tokens.values()],
            "audit_records": [self._serialize(r) for r in self.audit_records],
            "password_resets": [self._serialize(p) for p in self.password_resets.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        os.replace(tmp_path, path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            state = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("memory_store_state_unreadable", path=str(path), error=str(exc))
            raise
        for raw in state.get("tenants", []):
            tenant = Tenant(id=raw["id"], status=TenantStatus(raw["status"]))
            self.tenants[tenant.id] = tenant
        for raw in state.get("users", []):
            user = User(**self._parse_times(raw, "created_at"))
            self.users[user.id] = user
        for raw in state.get("credentials", []):
            self.credentials[raw["user_id"]] = (raw["password_hash"], raw["password_algo"])
        for raw in state.get("refresh_tokens", []):
            token = RefreshToken(
                **self._parse_times(raw, "issued_at", "expires_at", "revoked_at")
            )
            self.refresh_tokens[token.id] = token
            self._refresh_by_hash[token.token_hash] = token.id
        for raw in state.get("audit_records", []):
            raw = self._parse_times(raw, "timestamp")
            raw["severity"] = Severity(raw["severity"])
            self.audit_records.append(AuditRecord(**raw))
        for raw in state.get("password_resets", []):
            reset = PasswordResetToken(
                **self._parse_times(raw, "expires_at", "created_at", "used_at")
            )
            self.password_resets[reset.token_hash] = reset
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
            audit_records=len(self.audit_records),
        )
        return True
