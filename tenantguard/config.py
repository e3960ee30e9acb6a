from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantguard.logging import get_logger

logger = get_logger(__name__)


class AuditFailurePolicy(str, Enum):
    """What a privileged access does when its audit record cannot be written."""

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


DEFAULT_EXEMPT_PATHS = [
    "/healthz",
    "/v1/auth/login",
    "/v1/auth/refresh",
    "/v1/auth/password-reset/request",
    "/v1/auth/password-reset/confirm",
]

# waits that run inside a request and must end before its deadline
_INNER_TIMEOUTS = (
    "store_timeout_seconds",
    "audit_write_timeout_seconds",
    "alert_timeout_seconds",
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the isolation core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tenantguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tenantguard", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantguard-clients", "JWT_AUDIENCE")
    # TTLs are deployment constants; no API accepts a per-call TTL.
    access_token_ttl_minutes: int = env_field(
        180, "ACCESS_TOKEN_TTL_MINUTES", ge=1
    )
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    password_reset_ttl_minutes: int = env_field(
        30, "PASSWORD_RESET_TTL_MINUTES", ge=1
    )
    refresh_token_retention_days: int = env_field(
        30,
        "REFRESH_TOKEN_RETENTION_DAYS",
        description="Days revoked/expired refresh tokens are kept before purge",
    )
    privileged_role: str = env_field("platform_admin", "PRIVILEGED_ROLE")
    tenant_admin_role: str = env_field("admin", "TENANT_ADMIN_ROLE")
    exempt_paths: list[str] = env_field(
        list(DEFAULT_EXEMPT_PATHS),
        "EXEMPT_PATHS",
        description="Comma separated list of exact paths served without a token",
    )
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/v1/auth", "REFRESH_COOKIE_PATH")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    request_timeout_seconds: float = env_field(
        10.0,
        "REQUEST_TIMEOUT_SECONDS",
        gt=0,
        description="Deadline for gate plus handler; every inner wait is shorter",
    )
    store_timeout_seconds: float = env_field(
        3.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for a single store/cache call; below the request deadline",
    )
    audit_write_timeout_seconds: float = env_field(
        3.0, "AUDIT_WRITE_TIMEOUT_SECONDS"
    )
    audit_queue_size: int = env_field(10000, "AUDIT_QUEUE_SIZE", ge=1)
    audit_failure_policy: AuditFailurePolicy = env_field(
        AuditFailurePolicy.FAIL_OPEN, "AUDIT_FAILURE_POLICY"
    )
    alert_webhook_url: str | None = env_field(None, "ALERT_WEBHOOK_URL")
    alert_timeout_seconds: float = env_field(2.0, "ALERT_TIMEOUT_SECONDS")
    cleanup_interval_seconds: int = env_field(600, "CLEANUP_INTERVAL_SECONDS")
    # per minute; 0 disables
    login_rate_limit_per_minute: int = env_field(5, "LOGIN_RATE_LIMIT_PER_MINUTE", ge=0)
    login_ip_rate_limit_per_minute: int = env_field(30, "LOGIN_IP_RATE_LIMIT_PER_MINUTE", ge=0)
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE", ge=0)
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE", ge=0)
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("exempt_paths", mode="before")
    @classmethod
    def _split_exempt_paths(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("audit_failure_policy")
    @classmethod
    def _validate_policy(cls, value: AuditFailurePolicy) -> AuditFailurePolicy:
        return AuditFailurePolicy(value)

    @model_validator(mode="after")
    def _inside_request_deadline(self) -> "Settings":
        for name in _INNER_TIMEOUTS:
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive")
            if value >= self.request_timeout_seconds:
                raise ValueError(f"{name} must be shorter than the request timeout")
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tenantguard"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        import tempfile

        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
