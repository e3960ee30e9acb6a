from __future__ import annotations

import asyncio
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service.errors import AuthenticationError, ValidationError
from tenantguard.service.tokens import SessionTokens, TokenService
from tenantguard.storage.common import Store, call_store
from tenantguard.storage.models import PasswordResetToken, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class ResetNotifier(Protocol):
    def send_password_reset(self, user: User, token: str) -> None: ...


class LogOnlyResetNotifier:
    """Default notifier: delivery belongs to the messaging service, so only log."""

    def send_password_reset(self, user: User, token: str) -> None:
        logger.info("password_reset_issued", user_id=user.id)


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()


class AuthService:
    """Password login and password reset in front of :class:`TokenService`."""

    def __init__(
        self,
        store: Store,
        tokens: TokenService,
        settings: Settings,
        *,
        notifier: Optional[ResetNotifier] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self.notifier: ResetNotifier = notifier or LogOnlyResetNotifier()
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _store(self, func, *args, **kwargs):
        return await call_store(self.settings.store_timeout_seconds, func, *args, **kwargs)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            self._burn_verification(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    def _burn_verification(self, password: str) -> None:
        # unknown accounts cost the same argon2 work as known ones
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass

    async def login(
        self, email: str, password: str, *, client_ip: Optional[str] = None
    ) -> SessionTokens:
        user = await self._store(self.store.get_user_by_email, email)
        if user is None:
            await asyncio.to_thread(self._burn_verification, password)
            logger.info("login_failed", email_hash=_email_hash(email), reason="unknown_user")
            raise AuthenticationError("invalid credentials")
        if not await asyncio.to_thread(self.verify_password, user.id, password):
            logger.info("login_failed", user_id=user.id, reason="bad_password")
            raise AuthenticationError("invalid credentials")
        if not user.is_active:
            logger.info("login_failed", user_id=user.id, reason="inactive")
            raise AuthenticationError("invalid credentials")
        session = await self.tokens.issue_session(
            user.id, user.tenant_id, user.role, client_ip=client_ip
        )
        logger.info("login_succeeded", user_id=user.id, tenant_id=session.tenant_id)
        return session

    async def request_password_reset(self, email: str) -> None:
        """Issue a single-use reset token if the account exists. Silent otherwise."""
        user = await self._store(self.store.get_user_by_email, email)
        if user is None or not user.is_active:
            logger.info("password_reset_unknown_account", email_hash=_email_hash(email))
            return
        token = secrets.token_urlsafe(32)
        now = self._now()
        await self._store(
            self.store.save_password_reset_token,
            PasswordResetToken(
                token_hash=hashlib.sha256(token.encode()).hexdigest(),
                user_id=user.id,
                expires_at=now + timedelta(minutes=self.settings.password_reset_ttl_minutes),
                created_at=now,
            ),
        )
        await asyncio.to_thread(self.notifier.send_password_reset, user, token)

    async def confirm_password_reset(self, token: str, new_password: str) -> None:
        user_id = await self._store(
            self.store.consume_password_reset_token,
            hashlib.sha256(token.encode()).hexdigest(),
            self._now(),
        )
        if not user_id:
            logger.warning("password_reset_invalid_token")
            raise ValidationError("invalid token")
        await asyncio.to_thread(self.save_password, user_id, new_password)
        await self.tokens.revoke_all_user_sessions(user_id, "password_reset")
        logger.info("password_reset_completed", user_id=user_id)
