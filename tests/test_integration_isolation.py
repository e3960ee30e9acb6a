"""End-to-end isolation checks through the HTTP surface."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from tenantguard.app import app
from tenantguard.service.runtime import get_runtime
from tenantguard.storage.models import Severity

PASSWORD = "Correct-Horse-42"


class CapturingNotifier:
    def __init__(self):
        self.sent = []

    def send_password_reset(self, user, token):
        self.sent.append((user.id, token))


@pytest.fixture
def runtime():
    rt = get_runtime()
    rt.store.create_tenant("t1")
    rt.store.create_tenant("t2")
    return rt


@pytest.fixture
def client(runtime):
    return TestClient(app)


def _make_user(runtime, email, role="teacher", tenant_id="t1"):
    user = runtime.store.create_user(email, role=role, tenant_id=tenant_id)
    runtime.auth.save_password(user.id, PASSWORD)
    return user


def _login(client, email, password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(resp):
    return {"Authorization": f"Bearer {resp.json()['data']['access_token']}"}


def _audit(runtime, action):
    return [r for r in runtime.store.audit_records if r.action == action]


def test_teacher_cannot_read_other_school(client, runtime):
    _make_user(runtime, "teacher@one.example")
    headers = _bearer(_login(client, "teacher@one.example"))

    resp = client.get("/v1/tenants/t2", headers=headers)

    assert resp.status_code == 403
    assert resp.json()["error"] == {"code": "forbidden", "message": "forbidden", "details": None}
    denied = _audit(runtime, "cross-tenant-denied")
    assert len(denied) == 1
    assert denied[0].severity == Severity.CRITICAL
    assert denied[0].actor_tenant_id == "t1"
    assert denied[0].target_tenant_id == "t2"


def test_teacher_can_read_own_school(client, runtime):
    _make_user(runtime, "teacher@one.example")
    headers = _bearer(_login(client, "teacher@one.example"))

    resp = client.get("/v1/tenants/t1", headers=headers)

    assert resp.status_code == 200
    assert resp.json()["data"] == {"id": "t1", "status": "active"}
    assert _audit(runtime, "cross-tenant-denied") == []


def test_foreign_and_missing_resources_are_byte_identical(client, runtime):
    _make_user(runtime, "teacher@one.example")
    headers = _bearer(_login(client, "teacher@one.example"))

    foreign = client.get("/v1/tenants/t2", headers=headers)
    missing = client.get("/v1/tenants/no-such-school", headers=headers)

    assert foreign.status_code == missing.status_code == 403
    assert foreign.content == missing.content


def test_operator_reads_any_school_with_elevated_audit(client, runtime):
    _make_user(runtime, "ops@platform.example", role=runtime.settings.privileged_role, tenant_id=None)
    login = _login(client, "ops@platform.example")
    assert login.json()["data"]["tenant_id"] is None

    resp = client.get("/v1/tenants/t1", headers=_bearer(login))

    assert resp.status_code == 200
    elevated = _audit(runtime, "privileged-access")
    assert len(elevated) == 1
    assert elevated[0].severity == Severity.ELEVATED
    assert elevated[0].target_tenant_id == "t1"


def _refresh_with(client, cookie_name, value):
    return client.post("/v1/auth/refresh", headers={"Cookie": f"{cookie_name}={value}"})


def test_refresh_replay_kills_the_chain(client, runtime):
    _make_user(runtime, "teacher@one.example")
    cookie_name = runtime.settings.refresh_cookie_name
    r0 = _login(client, "teacher@one.example").cookies[cookie_name]

    first = _refresh_with(client, cookie_name, r0)
    assert first.status_code == 200
    r1 = first.cookies[cookie_name]
    assert r1 != r0

    replay = _refresh_with(client, cookie_name, r0)
    assert replay.status_code == 401
    assert replay.json()["error"]["message"] == "unauthenticated"

    assert _refresh_with(client, cookie_name, r1).status_code == 401
    assert len(_audit(runtime, "refresh-token-reuse")) == 1


def test_refresh_rotates_cookie_and_access_token(client, runtime):
    _make_user(runtime, "teacher@one.example")
    cookie_name = runtime.settings.refresh_cookie_name
    login = _login(client, "teacher@one.example")

    rotated = _refresh_with(client, cookie_name, login.cookies[cookie_name])

    assert rotated.status_code == 200
    assert rotated.json()["data"]["session_id"] == login.json()["data"]["session_id"]
    assert client.get("/v1/auth/me", headers=_bearer(rotated)).status_code == 200


def test_refresh_without_cookie(client):
    resp = client.post("/v1/auth/refresh")

    assert resp.status_code == 401


def test_user_without_tenant_is_always_refused(client, runtime):
    # a migration left this account without a school
    _make_user(runtime, "orphan@one.example", tenant_id=None)

    login = _login(client, "orphan@one.example")
    assert login.status_code == 403

    user = runtime.store.get_user_by_email("orphan@one.example")
    now = datetime.now(timezone.utc)
    forged_by_server = runtime.tokens._encode_jwt(
        {
            "iss": runtime.settings.jwt_issuer,
            "aud": runtime.settings.jwt_audience,
            "sub": user.id,
            "sid": "chain-x",
            "tenant_id": None,
            "role": "teacher",
            "token_type": "access",
            "jti": "jti-x",
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(minutes=5)).timestamp()),
        }
    )
    headers = {"Authorization": f"Bearer {forged_by_server}"}
    for path in ("/v1/auth/me", "/v1/tenants/t1", "/v1/tenants/t1/audit"):
        resp = client.get(path, headers=headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == "forbidden"
    assert len(_audit(runtime, "missing-tenant")) == 3


def test_logged_out_access_token_is_rejected(client, runtime):
    _make_user(runtime, "teacher@one.example")
    headers = _bearer(_login(client, "teacher@one.example"))
    assert client.get("/v1/auth/me", headers=headers).status_code == 200

    assert client.post("/v1/auth/logout", headers=headers).status_code == 200

    for path in ("/v1/auth/me", "/v1/tenants/t1"):
        resp = client.get(path, headers=headers)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"


def test_latin1_signature_gets_plain_401(client, runtime):
    _make_user(runtime, "teacher@one.example")
    token = _login(client, "teacher@one.example").json()["data"]["access_token"]
    header, payload, _ = token.split(".")
    garbled = f"Bearer {header}.{payload}.".encode("ascii") + b"\xe9\xe9"

    resp = client.get("/v1/auth/me", headers={"Authorization": garbled})

    assert resp.status_code == 401
    assert resp.json()["error"] == {
        "code": "unauthorized",
        "message": "unauthenticated",
        "details": None,
    }


def test_suspended_school_cannot_log_in(client, runtime):
    runtime.store.create_tenant("t3")
    _make_user(runtime, "teacher@three.example", tenant_id="t3")
    runtime.store.set_tenant_status("t3", "suspended")

    resp = _login(client, "teacher@three.example")

    assert resp.status_code == 403
    assert resp.json()["error"]["message"] == "forbidden"


class TestLogin:
    def test_bad_password_and_unknown_user_look_the_same(self, client, runtime):
        _make_user(runtime, "teacher@one.example")

        wrong = _login(client, "teacher@one.example", "nope-nope-nope")
        unknown = _login(client, "nobody@one.example")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.content == unknown.content

    def test_refresh_token_only_in_cookie(self, client, runtime):
        _make_user(runtime, "teacher@one.example")

        resp = _login(client, "teacher@one.example")

        assert "refresh_token" not in resp.json()["data"]
        set_cookie = resp.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "samesite=strict" in set_cookie
        assert f"path={runtime.settings.refresh_cookie_path}" in set_cookie

    def test_me_reports_principal(self, client, runtime):
        user = _make_user(runtime, "teacher@one.example")
        headers = _bearer(_login(client, "teacher@one.example"))

        data = client.get("/v1/auth/me", headers=headers).json()["data"]

        assert data["user_id"] == user.id
        assert data["tenant_id"] == "t1"
        assert data["privileged"] is False

    def test_invalid_email_is_400(self, client):
        resp = client.post("/v1/auth/login", json={"email": "not-an-email", "password": "x"})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_request_id_only_in_header(self, client):
        resp = client.get("/v1/auth/me", headers={"X-Request-ID": "req-123"})

        assert resp.status_code == 401
        assert resp.headers["X-Request-ID"] == "req-123"
        assert "req-123" not in resp.text


class TestPasswordReset:
    def test_reset_flow_revokes_existing_sessions(self, client, runtime):
        notifier = CapturingNotifier()
        runtime.auth.notifier = notifier
        _make_user(runtime, "teacher@one.example")
        old_headers = _bearer(_login(client, "teacher@one.example"))

        assert (
            client.post(
                "/v1/auth/password-reset/request", json={"email": "teacher@one.example"}
            ).status_code
            == 200
        )
        assert len(notifier.sent) == 1
        _, token = notifier.sent[0]

        confirm = client.post(
            "/v1/auth/password-reset/confirm",
            json={"token": token, "new_password": "Brand-New-Passw0rd"},
        )
        assert confirm.status_code == 200

        assert client.get("/v1/auth/me", headers=old_headers).status_code == 401
        assert _login(client, "teacher@one.example").status_code == 401
        assert _login(client, "teacher@one.example", "Brand-New-Passw0rd").status_code == 200

        again = client.post(
            "/v1/auth/password-reset/confirm",
            json={"token": token, "new_password": "Another-Passw0rd"},
        )
        assert again.status_code == 400

    def test_unknown_email_gets_same_answer(self, client, runtime):
        notifier = CapturingNotifier()
        runtime.auth.notifier = notifier

        resp = client.post(
            "/v1/auth/password-reset/request", json={"email": "ghost@one.example"}
        )

        assert resp.status_code == 200
        assert resp.json()["data"] == {"status": "sent"}
        assert notifier.sent == []


class TestTenantAudit:
    def test_admin_reads_own_audit_trail(self, client, runtime):
        _make_user(runtime, "admin@one.example", role=runtime.settings.tenant_admin_role)
        _make_user(runtime, "teacher@one.example")
        teacher_headers = _bearer(_login(client, "teacher@one.example"))
        client.get("/v1/tenants/t2", headers=teacher_headers)
        admin_headers = _bearer(_login(client, "admin@one.example"))

        resp = client.get("/v1/tenants/t1/audit", headers=admin_headers)

        assert resp.status_code == 200
        actions = [item["action"] for item in resp.json()["data"]["items"]]
        assert "cross-tenant-denied" in actions

    def test_teacher_cannot_read_audit_trail(self, client, runtime):
        _make_user(runtime, "teacher@one.example")
        headers = _bearer(_login(client, "teacher@one.example"))

        assert client.get("/v1/tenants/t1/audit", headers=headers).status_code == 403

    def test_admin_cannot_read_other_school_audit(self, client, runtime):
        _make_user(runtime, "admin@one.example", role=runtime.settings.tenant_admin_role)
        headers = _bearer(_login(client, "admin@one.example"))

        resp = client.get("/v1/tenants/t2/audit", headers=headers)

        assert resp.status_code == 403
        assert len(_audit(runtime, "cross-tenant-denied")) == 1


class TestAdminRevokeSessions:
    def test_admin_revokes_teacher_sessions(self, client, runtime):
        _make_user(runtime, "admin@one.example", role=runtime.settings.tenant_admin_role)
        teacher = _make_user(runtime, "teacher@one.example")
        teacher_headers = _bearer(_login(client, "teacher@one.example"))
        admin_headers = _bearer(_login(client, "admin@one.example"))

        resp = client.post(
            f"/v1/admin/users/{teacher.id}/revoke-sessions", headers=admin_headers
        )

        assert resp.status_code == 200
        assert resp.json()["data"] == {"user_id": teacher.id, "revoked": 1}
        assert client.get("/v1/auth/me", headers=teacher_headers).status_code == 401
        records = _audit(runtime, "sessions-revoked")
        assert len(records) == 1
        assert records[0].target_resource_id == teacher.id

    def test_admin_cannot_touch_other_school(self, client, runtime):
        _make_user(runtime, "admin@one.example", role=runtime.settings.tenant_admin_role)
        other = _make_user(runtime, "teacher@two.example", tenant_id="t2")
        admin_headers = _bearer(_login(client, "admin@one.example"))

        foreign = client.post(f"/v1/admin/users/{other.id}/revoke-sessions", headers=admin_headers)
        missing = client.post("/v1/admin/users/nobody/revoke-sessions", headers=admin_headers)

        assert foreign.status_code == missing.status_code == 403
        assert foreign.content == missing.content


def test_healthz_is_exempt(client):
    resp = client.get("/healthz")

    assert resp.status_code == 200
    assert resp.json()["checks"]["database"]["status"] == "healthy"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
