from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from tenantguard.api.error_handling import register_exception_handlers
from tenantguard.api.middleware import install_request_deadline, install_tenant_gate
from tenantguard.api.routes import router
from tenantguard.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_token_cleanup(interval_seconds: int) -> None:
    """Periodically evict dead revocation entries and purge old refresh links."""
    from tenantguard.service.runtime import get_runtime

    interval = max(interval_seconds, 30)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await get_runtime().tokens.purge_expired()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("token_cleanup_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("token_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from tenantguard.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.audit.start()
    cleanup_task = asyncio.create_task(
        _run_token_cleanup(runtime.settings.cleanup_interval_seconds)
    )
    logger.info("startup_complete", build=runtime.settings.build_sha)

    yield

    cleanup_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup_task
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="tenantguard", version=__version__, lifespan=lifespan)

    # Starlette runs the last-registered middleware first: correlation id,
    # then security headers, then the request deadline around the tenant gate.
    install_tenant_gate(app)
    install_request_deadline(app)

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        return response

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Echo or mint ``X-Request-ID`` and bind it to every log line of the request."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health():
        """Liveness plus dependency checks for the store and, if configured, Redis."""
        from tenantguard.service.runtime import get_runtime

        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout",
                    component=label,
                    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        healthy = db_ok

        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}

        body = {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "build": runtime.settings.build_sha,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    return app


app = create_app()
