from __future__ import annotations

import asyncio

from fastapi import FastAPI, Request

from tenantguard.api.error_handling import error_response, service_error_response
from tenantguard.logging import get_logger
from tenantguard.service.errors import SignatureInvalid, ServiceError
from tenantguard.service.principal import Principal
from tenantguard.storage.errors import StoreUnavailable

logger = get_logger(__name__)


def install_tenant_gate(app: FastAPI) -> None:
    """Run every request through the tenant isolation gate before routing."""

    @app.middleware("http")
    async def tenant_gate(request: Request, call_next):
        from tenantguard.service.runtime import get_runtime

        request.state.principal = None
        gate = get_runtime().gate
        try:
            principal = await gate.authorize(
                request.url.path, request.headers.get("Authorization")
            )
        except ServiceError as exc:
            return service_error_response(request, exc)
        except StoreUnavailable as exc:
            logger.error("gate_store_unavailable", path=request.url.path, error=str(exc))
            return error_response(503, "service unavailable", code="server_error")
        request.state.principal = principal
        return await call_next(request)


class RequestDeadlineMiddleware:
    """Cancel the gate and the handler once ``request_timeout_seconds`` has passed.

    Store, audit and alert waits are configured shorter than this deadline, so
    it only fires when several of them stack up. A request cancelled before
    its response started gets a 503 envelope.
    """

    def __init__(self, app) -> None:
        self.app = app

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        from tenantguard.service.runtime import get_runtime

        deadline = get_runtime().settings.request_timeout_seconds
        started = False

        async def send_tracking_start(message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await asyncio.wait_for(self.app(scope, receive, send_tracking_start), deadline)
        except asyncio.TimeoutError:
            logger.error(
                "request_deadline_exceeded",
                path=scope.get("path"),
                method=scope.get("method"),
                timeout=deadline,
                response_started=started,
            )
            if started:
                return
            response = error_response(503, "service unavailable", code="server_error")
            await response(scope, receive, send)


def install_request_deadline(app: FastAPI) -> None:
    app.add_middleware(RequestDeadlineMiddleware)


def get_principal(request: Request) -> Principal:
    """FastAPI dependency returning the principal the gate attached.

    Tenant ids are never taken from the body, query or headers.
    """
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise SignatureInvalid("no principal on request")
    return principal
