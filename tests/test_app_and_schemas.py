import asyncio

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tenantguard import app as app_module
from tenantguard.api import schemas
from tenantguard.service.runtime import get_runtime


def test_security_headers_and_health():
    client = TestClient(app_module.app)
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Cache-Control"].startswith("no-store")
    assert response.headers["X-Request-ID"]


def test_health_reports_unhealthy_store(monkeypatch):
    runtime = get_runtime()

    def broken():
        raise ConnectionError("db down")

    monkeypatch.setattr(runtime.store, "verify_connection", broken)
    response = TestClient(app_module.app).get("/healthz")

    assert response.status_code == 503
    assert response.json()["checks"]["database"] == {"status": "unhealthy"}


def test_lifespan_starts_and_stops_audit_writer():
    with TestClient(app_module.app) as client:
        runtime = get_runtime()
        assert runtime.audit._worker is not None
        assert client.get("/healthz").status_code == 200
    assert runtime.audit._worker is None


async def test_cleanup_loop_survives_cancellation():
    task = asyncio.create_task(app_module._run_token_cleanup(1))
    await asyncio.sleep(0)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert task.done()


def test_stalled_handler_is_cut_at_request_deadline(monkeypatch):
    runtime = get_runtime()
    monkeypatch.setattr(runtime.settings, "request_timeout_seconds", 0.05)
    finished = []

    async def stalled_login(*args, **kwargs):
        await asyncio.sleep(2)
        finished.append(True)

    monkeypatch.setattr(runtime.auth, "login", stalled_login)
    response = TestClient(app_module.app).post(
        "/v1/auth/login", json={"email": "teacher@school.example", "password": "x"}
    )

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "server_error"
    assert response.headers["X-Request-ID"]
    assert finished == []


def test_stalled_gate_is_cut_at_request_deadline(monkeypatch):
    runtime = get_runtime()
    monkeypatch.setattr(runtime.settings, "request_timeout_seconds", 0.05)

    async def stalled_authorize(path, header):
        await asyncio.sleep(2)

    monkeypatch.setattr(runtime.gate, "authorize", stalled_authorize)
    response = TestClient(app_module.app).get("/v1/auth/me")

    assert response.status_code == 503


def test_unknown_route_still_needs_a_token():
    response = TestClient(app_module.app).get("/v1/does-not-exist")

    assert response.status_code == 401


def test_login_email_normalized():
    body = schemas.LoginRequest(email="  Teacher\u200b@School.Example ", password="x")

    assert body.email == "teacher@school.example"


@pytest.mark.parametrize(
    "email",
    ["no-at-sign", "a@b", "a@-bad-.example", "spaces in@school.example", "x" * 65 + "@a.example"],
)
def test_invalid_emails_rejected(email):
    with pytest.raises(ValidationError):
        schemas.LoginRequest(email=email, password="x")


@pytest.mark.parametrize("password", ["short", "x" * 129])
def test_reset_password_strength(password):
    with pytest.raises(ValidationError):
        schemas.PasswordResetConfirm(token="t", new_password=password)


def test_auth_response_has_no_refresh_token_field():
    assert "refresh_token" not in schemas.AuthResponse.model_fields
