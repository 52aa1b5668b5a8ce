from __future__ import annotations

from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from portcullis.api.schemas import Envelope, ErrorBody
from portcullis.config import Environment
from portcullis.logging import get_correlation_id, get_logger, sanitize_error_message
from portcullis.service.errors import RateLimitedError, ServerError, ServiceError
from portcullis.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    envelope = Envelope(
        status="error",
        error=ErrorBody(code=error_code, message=message, details=details or None),
    )
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json"),
        headers=headers,
    )


def _is_development(request: Request) -> bool:
    runtime = getattr(request.app.state, "runtime", None)
    return bool(
        runtime is not None and runtime.settings.environment == Environment.DEVELOPMENT
    )


def server_error_response(request: Request, exc: Exception) -> JSONResponse:
    """Log an unhandled exception and build the 500 envelope for it."""
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
    )
    details = None
    if _is_development(request):
        details = {
            "type": type(exc).__name__,
            "error": sanitize_error_message(str(exc)),
        }
    failure = ServerError("internal server error")
    correlation_id = get_correlation_id()
    return error_response(
        failure.status_code,
        failure.message,
        details,
        code=failure.error_code,
        headers={"X-Request-ID": correlation_id} if correlation_id else None,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Translate every error raised below the middleware into the envelope."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            constraint=exc.constraint,
            message=exc.message,
        )
        return error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = None
        if isinstance(exc, RateLimitedError):
            limiter = request.app.state.runtime.limiter
            headers = (
                exc.decision.headers(limiter.now())
                if exc.decision is not None
                else {}
            )
            headers["Retry-After"] = str(exc.retry_after)
        return error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = [
            {
                "loc": list(err.get("loc", ())),
                "msg": err.get("msg"),
                "type": err.get("type"),
            }
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(details),
        )
        return error_response(400, "request validation failed", details, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(
            exc.status_code, message, details, headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        # Only errors raised outside the security middleware get here
        return server_error_response(request, exc)
