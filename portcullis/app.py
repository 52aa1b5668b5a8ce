from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response

from portcullis.api.error_handling import (
    error_response,
    register_exception_handlers,
    server_error_response,
)
from portcullis.api.routes import router
from portcullis.config import Settings, get_settings
from portcullis.logging import get_logger, set_correlation_id
from portcullis.service.csp import generate_nonce
from portcullis.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_STATIC_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=()",
}
_HSTS_VALUE = "max-age=63072000; includeSubDomains"
_NO_STORE = "no-store, no-cache, must-revalidate, private"


async def _run_key_cleanup(runtime: Runtime, interval_seconds: int) -> None:
    """Deactivate expired keys now and then every ``interval_seconds``."""
    while True:
        try:
            await asyncio.to_thread(runtime.vault.cleanup_expired)
        except Exception as exc:
            logger.error(
                "key_cleanup_failed", error_type=type(exc).__name__, error=str(exc)
            )
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: Runtime = app.state.runtime
    cleanup_task = asyncio.create_task(
        _run_key_cleanup(runtime, runtime.settings.key_cleanup_interval_seconds)
    )
    try:
        yield
    finally:
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
        try:
            await runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))


def _merge_vary(response: Response, value: str) -> None:
    existing = response.headers.get("Vary")
    if not existing:
        response.headers["Vary"] = value
    elif value.lower() not in {v.strip().lower() for v in existing.split(",")}:
        response.headers["Vary"] = f"{existing}, {value}"


def _apply_static_headers(request: Request, response: Response, settings: Settings) -> None:
    for name, value in _STATIC_HEADERS.items():
        response.headers.setdefault(name, value)
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", _NO_STORE)
    if request.url.scheme == "https" and settings.enable_hsts:
        response.headers.setdefault("Strict-Transport-Security", _HSTS_VALUE)


def _is_preflight(request: Request) -> bool:
    return (
        request.method == "OPTIONS"
        and "origin" in request.headers
        and "access-control-request-method" in request.headers
    )


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the gateway app. ConfigurationError propagates; nothing is served."""
    if runtime is None:
        runtime = Runtime(settings or get_settings())
    app = FastAPI(title="Portcullis", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    # Registered first so it sits inside the correlation id middleware
    @app.middleware("http")
    async def apply_security_policy(request: Request, call_next):
        origins = runtime.origin_policy
        content = runtime.content_policy
        origin = request.headers.get("origin")

        if origins.enabled and _is_preflight(request):
            headers = origins.preflight_headers(origin)
            if headers is None:
                logger.info("origin_denied", origin=origin, path=request.url.path, preflight=True)
                response = error_response(403, "Origin not allowed", code="forbidden")
            else:
                response = Response(status_code=204, headers=headers)
            _apply_static_headers(request, response, runtime.settings)
            return response

        nonce = generate_nonce() if content.enabled and content.use_nonce else None
        request.state.csp_nonce = nonce
        try:
            response = await call_next(request)
        except Exception as exc:
            # Rendered here so a 500 still leaves through the header policy
            response = server_error_response(request, exc)

        for name, value in origins.response_headers(origin).items():
            if name == "Vary":
                _merge_vary(response, value)
            else:
                response.headers[name] = value
        if content.enabled:
            name, value = content.header(nonce)
            response.headers[name] = value
        _apply_static_headers(request, response, runtime.settings)
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs with X-Request-ID (client supplied or generated) and echo it."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
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

        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.utcnow().isoformat(),
        }

    return app
