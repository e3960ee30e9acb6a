from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code``, a stable
    ``error_code`` and a ``public_message``. Only the public message ever
    reaches a client; ``message`` and ``detail`` are for logs and the audit
    trail.
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def client_message(self) -> str:
        return self.public_message or self.message


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    Every subclass answers with the same body so a caller cannot tell a bad
    signature from an expired, revoked or replayed token.
    """
    status_code = 401
    error_code = "unauthorized"
    public_message = "unauthenticated"


class SignatureInvalid(AuthenticationError):
    """Token is malformed, forged, or unknown."""


class TokenExpired(AuthenticationError):
    """Token reached its expiry instant."""


class TokenRevoked(AuthenticationError):
    """Token id is on the revocation list."""


class TokenReuseDetected(AuthenticationError):
    """An already superseded refresh token was presented again."""


class ForbiddenError(ServiceError):
    """Access denied (403). Body never says why."""
    status_code = 403
    error_code = "forbidden"
    public_message = "forbidden"


class MissingTenant(ForbiddenError):
    """Non-privileged principal without a tenant id."""


class CrossTenantDenied(ForbiddenError):
    """Principal touched a resource owned by another tenant."""


class TenantSuspended(ForbiddenError):
    """Tenant status forbids login."""


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    public_message = "internal server error"


class RateLimited(ServiceError):
    """Too many attempts for one subject (429)."""
    status_code = 429
    error_code = "rate_limited"
    public_message = "rate limit exceeded"


class AuditWriteFailed(ServerError):
    """A warning-or-higher audit record could not be made durable."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SignatureInvalid",
    "TokenExpired",
    "TokenRevoked",
    "TokenReuseDetected",
    "ForbiddenError",
    "MissingTenant",
    "CrossTenantDenied",
    "TenantSuspended",
    "NotFoundError",
    "ConflictError",
    "RateLimited",
    "ServerError",
    "AuditWriteFailed",
]
