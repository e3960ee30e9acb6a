from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL DEFAULT 'active'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL,
        tenant_id TEXT REFERENCES tenant(id),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        chain_id TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        issuing_ip TEXT,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT,
        replaced_by_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_chain_idx ON refresh_token (chain_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        ts TIMESTAMPTZ NOT NULL,
        action TEXT NOT NULL,
        severity TEXT NOT NULL,
        actor_user_id TEXT,
        actor_tenant_id TEXT,
        target_tenant_id TEXT,
        target_resource_type TEXT,
        target_resource_id TEXT,
        detail JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_target_tenant_idx ON audit_log (target_tenant_id, ts DESC)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        token_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at TIMESTAMPTZ
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for tenants, users, refresh chains and the audit log."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the tables this service owns if they are missing."""
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role", "student"),
            tenant_id=row.get("tenant_id"),
            is_active=row.get("is_active", True),
            created_at=as_utc(row.get("created_at") or utcnow()),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        revoked_at = row.get("revoked_at")
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            chain_id=str(row["chain_id"]),
            token_hash=row["token_hash"],
            issued_at=as_utc(row["issued_at"]),
            expires_at=as_utc(row["expires_at"]),
            issuing_ip=row.get("issuing_ip"),
            revoked_at=as_utc(revoked_at) if revoked_at else None,
            revoked_reason=row.get("revoked_reason"),
            replaced_by_id=row.get("replaced_by_id"),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditRecord:
        detail = row.get("detail") or {}
        if isinstance(detail, str):
            detail = json.loads(detail)
        return AuditRecord(
            id=str(row["id"]),
            timestamp=as_utc(row["ts"]),
            action=row["action"],
            severity=Severity(row["severity"]),
            actor_user_id=row.get("actor_user_id"),
            actor_tenant_id=row.get("actor_tenant_id"),
            target_tenant_id=row.get("target_tenant_id"),
            target_resource_type=row.get("target_resource_type"),
            target_resource_id=row.get("target_resource_id"),
            detail=detail,
        )

    # tenants
    def create_tenant(
        self, tenant_id: Optional[str] = None, status: TenantStatus = TenantStatus.ACTIVE
    ) -> Tenant:
        tenant = Tenant(id=tenant_id or str(uuid.uuid4()), status=TenantStatus(status))
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO tenant (id, status) VALUES (%s, %s)",
                    (tenant.id, tenant.status.value),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant already exists", {"tenant_id": tenant.id})
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, status FROM tenant WHERE id = %s", (tenant_id,)
            ).fetchone()
        if not row:
            return None
        return Tenant(id=str(row["id"]), status=TenantStatus(row["status"]))

    def set_tenant_status(self, tenant_id: str, status: TenantStatus) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE tenant SET status = %s WHERE id = %s RETURNING id, status",
                (TenantStatus(status).value, tenant_id),
            ).fetchone()
        if not row:
            return None
        return Tenant(id=str(row["id"]), status=TenantStatus(row["status"]))

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = "student",
        tenant_id: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()), email=email, role=role, tenant_id=tenant_id, is_active=is_active
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, role, tenant_id, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (user.id, email, role, tenant_id, is_active, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def list_users_without_tenant(self, exclude_role: str) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user WHERE tenant_id IS NULL AND role <> %s ORDER BY created_at",
                (exclude_role,),
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def assign_user_tenant(self, user_id: str, tenant_id: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE app_user SET tenant_id = %s WHERE id = %s RETURNING *",
                    (tenant_id, user_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    last_updated_at = now()
                """,
                (user_id, password_hash, password_algo),
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # refresh chains
    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh_row(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": token.user_id})
        return token

    @staticmethod
    def _insert_refresh_row(conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (
                id, user_id, chain_id, token_hash, issued_at, expires_at, issuing_ip
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.chain_id,
                token.token_hash,
                token.issued_at,
                token.expires_at,
                token.issuing_ip,
            ),
        )

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def list_refresh_chain(self, chain_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE chain_id = %s ORDER BY issued_at",
                (chain_id,),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def rotate_refresh_token(
        self, token_id: str, successor: RefreshToken, now: Optional[datetime] = None
    ) -> RotationOutcome:
        """Retire ``token_id`` in favour of ``successor`` if it is still active.

        The conditional UPDATE is the compare-and-swap: of two concurrent
        callers only one sees a row come back.
        """
        now = now or utcnow()
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoked_reason = %s, replaced_by_id = %s
                WHERE id = %s AND revoked_at IS NULL AND expires_at > %s
                RETURNING id
                """,
                (now, ROTATED_REASON, successor.id, token_id, now),
            ).fetchone()
            if row is None:
                current = conn.execute(
                    "SELECT revoked_at FROM refresh_token WHERE id = %s", (token_id,)
                ).fetchone()
                if current is None:
                    return RotationOutcome.NOT_FOUND
                if current["revoked_at"] is not None:
                    return RotationOutcome.ALREADY_REVOKED
                return RotationOutcome.EXPIRED
            self._insert_refresh_row(conn, successor)
        return RotationOutcome.ROTATED

    def revoke_refresh_chain(
        self, chain_id: str, reason: str, now: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s, revoked_reason = %s
                WHERE chain_id = %s AND revoked_at IS NULL
                """,
                (now or utcnow(), reason, chain_id),
            )
            return cur.rowcount or 0

    def revoke_chain_tip(
        self, chain_id: str, reason: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s, revoked_reason = %s
                WHERE id = (
                    SELECT id FROM refresh_token
                    WHERE chain_id = %s AND revoked_at IS NULL
                    ORDER BY issued_at DESC
                    LIMIT 1
                    FOR UPDATE
                )
                RETURNING *
                """,
                (now or utcnow(), reason, chain_id),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def list_user_chain_ids(self, user_id: str, *, active_only: bool = True) -> List[str]:
        query = "SELECT DISTINCT chain_id FROM refresh_token WHERE user_id = %s"
        if active_only:
            query += " AND revoked_at IS NULL"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY chain_id", (user_id,)).fetchall()
        return [str(row["chain_id"]) for row in rows]

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: str, now: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND revoked_at IS NULL
                """,
                (now or utcnow(), reason, user_id),
            )
            return cur.rowcount or 0

    def purge_refresh_tokens(self, older_than: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE issued_at < %s AND (revoked_at IS NOT NULL OR expires_at <= %s)
                """,
                (older_than, utcnow()),
            )
            return cur.rowcount or 0

    # audit
    def append_audit_record(self, record: AuditRecord) -> AuditRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (
                    id, ts, action, severity, actor_user_id, actor_tenant_id,
                    target_tenant_id, target_resource_type, target_resource_id, detail
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.timestamp,
                    record.action,
                    Severity(record.severity).value,
                    record.actor_user_id,
                    record.actor_tenant_id,
                    record.target_tenant_id,
                    record.target_resource_type,
                    record.target_resource_id,
                    json.dumps(record.detail, default=str),
                ),
            )
        return record

    def list_audit_records(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditRecord]:
        with self._connect() as conn:
            if tenant_id is None:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY ts DESC LIMIT %s", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM audit_log
                    WHERE target_tenant_id = %s OR actor_tenant_id = %s
                    ORDER BY ts DESC LIMIT %s
                    """,
                    (tenant_id, tenant_id, limit),
                ).fetchall()
        return [self._audit_from_row(row) for row in rows]

    # password reset
    def save_password_reset_token(self, token: PasswordResetToken) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_token (token_hash, user_id, expires_at, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (token.token_hash, token.user_id, token.expires_at, token.created_at),
            )

    def consume_password_reset_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[str]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET used_at = %s
                WHERE token_hash = %s AND used_at IS NULL AND expires_at > %s
                RETURNING user_id
                """,
                (now, token_hash, now),
            ).fetchone()
        return str(row["user_id"]) if row else None
