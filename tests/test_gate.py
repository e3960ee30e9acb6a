from datetime import datetime, timedelta, timezone

import pytest

from tenantguard.service.audit import AuditSink
from tenantguard.service.errors import MissingTenant, SignatureInvalid, TokenRevoked
from tenantguard.service.gate import TenantIsolationGate, extract_bearer
from tenantguard.service.tokens import TokenService
from tenantguard.storage.models import Severity
from tenantguard.storage.revocation import MemoryRevocationStore


@pytest.fixture
def tokens(store, settings, alerter):
    store.create_tenant("t1")
    return TokenService(store, MemoryRevocationStore(), AuditSink(store, alerter), settings)


@pytest.fixture
def gate(tokens, settings):
    return TenantIsolationGate(tokens, tokens.audit, settings.exempt_paths)


def _tenantless_token(tokens, role="teacher"):
    now = datetime.now(timezone.utc)
    return tokens._encode_jwt(
        {
            "iss": tokens.settings.jwt_issuer,
            "aud": tokens.settings.jwt_audience,
            "sub": "user-without-school",
            "sid": "chain-1",
            "tenant_id": None,
            "role": role,
            "token_type": "access",
            "jti": "jti-1",
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(minutes=5)).timestamp()),
        }
    )


@pytest.mark.parametrize(
    "header,expected",
    [
        (None, None),
        ("", None),
        ("Bearer abc", "abc"),
        ("bearer   abc ", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        ("Bearer ", None),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected


class TestAuthorize:
    async def test_exempt_path_needs_no_token(self, gate):
        assert await gate.authorize("/v1/auth/login", None) is None
        assert await gate.authorize("/healthz", "Bearer garbage") is None

    async def test_exempt_match_is_exact(self, gate):
        with pytest.raises(SignatureInvalid):
            await gate.authorize("/v1/auth/login/extra", None)

    async def test_missing_token(self, gate):
        with pytest.raises(SignatureInvalid):
            await gate.authorize("/v1/auth/me", None)

    async def test_valid_token_yields_principal(self, gate, tokens, store):
        user = store.create_user("t@school.example", role="teacher", tenant_id="t1")
        session = await tokens.issue_session(user.id, "t1", "teacher")

        principal = await gate.authorize("/v1/auth/me", f"Bearer {session.access_token}")

        assert principal.user_id == user.id
        assert principal.tenant_id == "t1"

    async def test_revoked_token(self, gate, tokens, store):
        user = store.create_user("t@school.example", role="teacher", tenant_id="t1")
        session = await tokens.issue_session(user.id, "t1", "teacher")
        await tokens.revoke_session(session.access_token_id, session.session_id)

        with pytest.raises(TokenRevoked):
            await gate.authorize("/v1/auth/me", f"Bearer {session.access_token}")

    async def test_tenantless_principal_is_refused_and_audited(self, gate, tokens, store):
        with pytest.raises(MissingTenant):
            await gate.authorize("/v1/tenants/t1", f"Bearer {_tenantless_token(tokens)}")

        records = [r for r in store.audit_records if r.action == "missing-tenant"]
        assert len(records) == 1
        assert records[0].severity == Severity.WARNING
        assert records[0].actor_user_id == "user-without-school"
        assert records[0].detail["path"] == "/v1/tenants/t1"

    async def test_privileged_principal_passes_without_tenant(self, gate, tokens, settings):
        token = _tenantless_token(tokens, role=settings.privileged_role)

        principal = await gate.authorize("/v1/tenants/t1", f"Bearer {token}")

        assert principal.is_privileged()
        assert principal.tenant_id is None
