from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service.audit import AuditSink
from tenantguard.service.errors import (
    MissingTenant,
    SignatureInvalid,
    TenantSuspended,
    TokenExpired,
    TokenReuseDetected,
    TokenRevoked,
)
from tenantguard.service.principal import Principal
from tenantguard.storage.common import Store, call_store
from tenantguard.storage.models import (
    ROTATED_REASON,
    AuditRecord,
    RefreshToken,
    RotationOutcome,
    Severity,
    User,
    utcnow,
)
from tenantguard.storage.revocation import RevocationStore

logger = get_logger(__name__)

REUSE_REASON = "reuse_detected"


def hash_refresh_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


@dataclass
class SessionTokens:
    user_id: str
    tenant_id: Optional[str]
    role: str
    session_id: str
    access_token: str
    access_token_id: str
    access_expires_at: datetime
    refresh_token: str
    refresh_token_id: str
    refresh_expires_at: datetime
    token_type: str = "bearer"


class TokenService:
    """Access-token minting/verification and refresh-chain rotation.

    Access tokens are HS256 JWTs; refresh tokens are opaque random values that
    are only ever stored hashed. Every refresh token belongs to a chain whose
    id doubles as the ``sid`` claim of the access tokens minted from it.
    """

    def __init__(
        self,
        store: Store,
        revocations: RevocationStore,
        audit: AuditSink,
        settings: Settings,
    ) -> None:
        self.store = store
        self.revocations = revocations
        self.audit = audit
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _store(self, func, *args: Any, **kwargs: Any):
        return await call_store(self.settings.store_timeout_seconds, func, *args, **kwargs)

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.access_token_ttl_seconds)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.refresh_token_ttl_seconds)

    def is_privileged_role(self, role: str) -> bool:
        return role == self.settings.privileged_role

    # issuing
    async def issue_session(
        self,
        user_id: str,
        tenant_id: Optional[str],
        role: str,
        client_ip: Optional[str] = None,
    ) -> SessionTokens:
        claim_tenant = await self._admissible_tenant(user_id, tenant_id, role)
        raw_refresh = secrets.token_urlsafe(32)
        now = self._now()
        refresh = RefreshToken.new(
            user_id,
            hash_refresh_token(raw_refresh),
            self.refresh_ttl,
            issuing_ip=client_ip,
            now=now,
        )
        await self._store(self.store.insert_refresh_token, refresh)
        logger.info(
            "session_issued",
            user_id=user_id,
            tenant_id=claim_tenant,
            role=role,
            session_id=refresh.chain_id,
        )
        return self._session_tokens(user_id, claim_tenant, role, refresh, raw_refresh, now)

    async def _admissible_tenant(
        self, user_id: str, tenant_id: Optional[str], role: str
    ) -> Optional[str]:
        """Return the tenant id to put in the claims, or raise."""
        if self.is_privileged_role(role):
            return None
        if not tenant_id:
            logger.error("session_missing_tenant", user_id=user_id, role=role)
            raise MissingTenant("non-privileged user without tenant", detail={"user_id": user_id})
        tenant = await self._store(self.store.get_tenant, tenant_id)
        if tenant is None or not tenant.allows_login:
            logger.warning(
                "session_tenant_not_active",
                user_id=user_id,
                tenant_id=tenant_id,
                status=tenant.status.value if tenant else None,
            )
            raise TenantSuspended("tenant does not allow login", detail={"tenant_id": tenant_id})
        return tenant_id

    def _session_tokens(
        self,
        user_id: str,
        tenant_id: Optional[str],
        role: str,
        refresh: RefreshToken,
        raw_refresh: str,
        now: datetime,
    ) -> SessionTokens:
        access_expires = now + self.access_ttl
        access_jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "sid": refresh.chain_id,
            "tenant_id": tenant_id,
            "role": role,
            "token_type": "access",
            "jti": access_jti,
            "iat": int(now.timestamp()),
            "exp": int(access_expires.timestamp()),
        }
        return SessionTokens(
            user_id=user_id,
            tenant_id=tenant_id,
            role=role,
            session_id=refresh.chain_id,
            access_token=self._encode_jwt(payload),
            access_token_id=access_jti,
            access_expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            refresh_token=raw_refresh,
            refresh_token_id=refresh.id,
            refresh_expires_at=refresh.expires_at,
        )

    # verification
    async def verify_access_token(self, raw: str) -> Principal:
        payload = self._decode_jwt(raw)
        if payload.get("token_type") != "access":
            raise SignatureInvalid("not an access token")
        jti = payload.get("jti")
        sub = payload.get("sub")
        sid = payload.get("sid")
        role = payload.get("role")
        if not (isinstance(jti, str) and isinstance(sub, str) and isinstance(sid, str)):
            raise SignatureInvalid("missing identity claims")
        if not isinstance(role, str) or not role:
            raise SignatureInvalid("missing role claim")
        try:
            exp = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise SignatureInvalid("missing expiry claim")
        now = self._now()
        if now.timestamp() >= exp:
            raise TokenExpired("access token expired", detail={"token_id": jti})
        # a session-wide entry kills every access token minted from that chain
        if await self.revocations.contains(jti) or await self.revocations.contains(sid):
            raise TokenRevoked("access token revoked", detail={"token_id": jti})
        tenant_id = payload.get("tenant_id")
        return Principal(
            user_id=sub,
            tenant_id=None if self.is_privileged_role(role) else (tenant_id or None),
            role=role,
            session_id=sid,
            token_id=jti,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            privileged_role=self.settings.privileged_role,
        )

    # rotation
    async def rotate_refresh_token(
        self, raw: str, client_ip: Optional[str] = None
    ) -> SessionTokens:
        if not raw:
            raise SignatureInvalid("empty refresh token")
        current = await self._store(self.store.get_refresh_token_by_hash, hash_refresh_token(raw))
        if current is None:
            raise SignatureInvalid("unknown refresh token")
        now = self._now()
        if current.revoked_at is not None:
            if current.revoked_reason == ROTATED_REASON:
                await self._handle_reuse(current, client_ip)
                raise TokenReuseDetected("superseded refresh token presented")
            raise TokenRevoked("refresh token revoked", detail={"token_id": current.id})
        if current.is_expired(now):
            raise TokenExpired("refresh token expired", detail={"token_id": current.id})

        user = await self._store(self.store.get_user, current.user_id)
        if user is None or not user.is_active:
            await self._store(
                self.store.revoke_refresh_chain, current.chain_id, "user_inactive", now
            )
            raise TokenRevoked("refresh token owner inactive", detail={"user_id": current.user_id})
        claim_tenant = await self._admissible_tenant(user.id, user.tenant_id, user.role)

        raw_successor = secrets.token_urlsafe(32)
        successor = RefreshToken.new(
            user.id,
            hash_refresh_token(raw_successor),
            self.refresh_ttl,
            chain_id=current.chain_id,
            issuing_ip=client_ip,
            now=now,
        )
        outcome = await self._store(self.store.rotate_refresh_token, current.id, successor, now)
        if outcome == RotationOutcome.ALREADY_REVOKED:
            # lost the race against a concurrent rotation of the same link
            await self._handle_reuse(current, client_ip, user=user)
            raise TokenReuseDetected("refresh token rotated concurrently")
        if outcome == RotationOutcome.EXPIRED:
            raise TokenExpired("refresh token expired", detail={"token_id": current.id})
        if outcome == RotationOutcome.NOT_FOUND:
            raise SignatureInvalid("unknown refresh token")
        logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            session_id=current.chain_id,
            refresh_token_id=successor.id,
        )
        return self._session_tokens(user.id, claim_tenant, user.role, successor, raw_successor, now)

    async def _handle_reuse(
        self, token: RefreshToken, client_ip: Optional[str], *, user: Optional[User] = None
    ) -> None:
        now = self._now()
        revoked = await self._store(
            self.store.revoke_refresh_chain, token.chain_id, REUSE_REASON, now
        )
        if user is None:
            user = await self._store(self.store.get_user, token.user_id)
        tenant_id = user.tenant_id if user else None
        await self.audit.record(
            AuditRecord(
                action="refresh-token-reuse",
                severity=Severity.CRITICAL,
                actor_user_id=token.user_id,
                actor_tenant_id=tenant_id,
                target_tenant_id=tenant_id,
                target_resource_type="refresh_chain",
                target_resource_id=token.chain_id,
                detail={
                    "refresh_token_id": token.id,
                    "revoked_links": revoked,
                    "client_ip": client_ip,
                    "issuing_ip": token.issuing_ip,
                },
            )
        )
        # access tokens of the chain die with it
        await self.revocations.add(token.chain_id, now + self.access_ttl)

    # revocation
    async def revoke_session(
        self,
        token_id: str,
        session_id: str,
        reason: str = "logout",
        expires_at: Optional[datetime] = None,
    ) -> Optional[RefreshToken]:
        """Revoke an access token and the refresh chain tip it was minted from."""
        tip = await self._store(self.store.revoke_chain_tip, session_id, reason, self._now())
        await self.revocations.add(token_id, expires_at or self._now() + self.access_ttl)
        logger.info(
            "session_revoked",
            token_id=token_id,
            session_id=session_id,
            reason=reason,
            refresh_token_id=tip.id if tip else None,
        )
        return tip

    async def revoke_all_user_sessions(self, user_id: str, reason: str) -> int:
        now = self._now()
        chain_ids = await self._store(self.store.list_user_chain_ids, user_id, active_only=True)
        revoked = await self._store(self.store.revoke_user_refresh_tokens, user_id, reason, now)
        for chain_id in chain_ids:
            await self.revocations.add(chain_id, now + self.access_ttl)
        logger.info(
            "user_sessions_revoked", user_id=user_id, reason=reason, revoked=revoked
        )
        return revoked

    async def purge_expired(self) -> Dict[str, int]:
        revocations = await self.revocations.purge_expired()
        cutoff = utcnow() - timedelta(days=self.settings.refresh_token_retention_days)
        refresh = await self._store(self.store.purge_refresh_tokens, cutoff)
        if revocations or refresh:
            logger.info(
                "token_cleanup_completed", revocations=revocations, refresh_tokens=refresh
            )
        return {"revocations": revocations, "refresh_tokens": refresh}

    # JWT
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        """Check structure, algorithm, signature, issuer and audience.

        Expiry is left to the caller so it can be reported separately.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise SignatureInvalid("malformed token")
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise SignatureInvalid("malformed token header")
        if not isinstance(header, dict):
            raise SignatureInvalid("malformed token header")
        # pinned: never let the token pick its own algorithm
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise SignatureInvalid("unexpected algorithm")
        expected = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        try:
            presented = sig_b64.encode("ascii")
        except UnicodeEncodeError:
            raise SignatureInvalid("non-ascii signature")
        if not hmac.compare_digest(expected, presented):
            raise SignatureInvalid("bad signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise SignatureInvalid("malformed token payload")
        if not isinstance(payload, dict):
            raise SignatureInvalid("malformed token payload")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise SignatureInvalid("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise SignatureInvalid("audience mismatch")
        return payload
