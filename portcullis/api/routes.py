from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path, Request, Response, WebSocket, WebSocketDisconnect

from portcullis.api.deps import (
    RateLimitGate,
    get_principal,
    get_runtime,
    require_bearer_principal,
    require_permission,
)
from portcullis.api.error_handling import error_response
from portcullis.api.schemas import (
    ApiKeyCreatedResponse,
    ApiKeyListResponse,
    ApiKeyView,
    CleanupResponse,
    CreateApiKeyRequest,
    Envelope,
    PrincipalResponse,
    UpdateApiKeyRequest,
)
from portcullis.logging import get_logger
from portcullis.service.errors import ValidationError
from portcullis.service.handshake import (
    CLOSE_FORBIDDEN_ORIGIN,
    CLOSE_RATE_LIMITED,
    CLOSE_UNAUTHORIZED,
    HandshakeRejected,
    SocketAuthContext,
    select_subprotocol,
)
from portcullis.service.principals import Principal
from portcullis.service.rate_limit import Tier, client_key
from portcullis.service.runtime import Runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

MAX_CSP_REPORT_BYTES = 64 * 1024
_REPORT_FIELDS = (
    ("document-uri", "documentURL"),
    ("violated-directive", "effectiveDirective"),
    ("blocked-uri", "blockedURL"),
    ("disposition", "disposition"),
)


def _ok(data: Any) -> Envelope:
    return Envelope(status="ok", data=data)


# -- identity -----------------------------------------------------------------


@router.get("/me", response_model=Envelope, dependencies=[Depends(RateLimitGate(Tier.RELAXED))])
async def whoami(principal: Principal = Depends(get_principal)) -> Envelope:
    return _ok(
        PrincipalResponse(
            id=principal.id,
            credential=principal.credential,
            role=principal.role,
            permissions=list(principal.permissions),
            key_id=principal.key_id,
        ).model_dump()
    )


# -- API key management -------------------------------------------------------


@router.post(
    "/api-keys",
    response_model=Envelope,
    status_code=201,
    dependencies=[Depends(RateLimitGate(Tier.MODERATE))],
)
async def create_api_key(
    body: CreateApiKeyRequest,
    principal: Principal = Depends(require_bearer_principal),
    runtime: Runtime = Depends(get_runtime),
) -> Envelope:
    record, plaintext = await runtime.vault.issue(
        principal.id,
        body.name,
        permissions=body.permissions,
        expires_in=body.expires_in,
        ip_allowlist=body.ip_allowlist,
    )
    resp = ApiKeyCreatedResponse(key=plaintext, api_key=ApiKeyView.from_record(record))
    return _ok(resp.model_dump(mode="json"))


@router.get("/api-keys", response_model=Envelope, dependencies=[Depends(RateLimitGate(Tier.RELAXED))])
async def list_api_keys(
    principal: Principal = Depends(require_bearer_principal),
    runtime: Runtime = Depends(get_runtime),
) -> Envelope:
    records = await asyncio.to_thread(runtime.vault.list_keys, principal.id)
    items = [ApiKeyView.from_record(r) for r in records]
    return _ok(ApiKeyListResponse(items=items, total=len(items)).model_dump(mode="json"))


@router.post(
    "/api-keys/cleanup",
    response_model=Envelope,
    dependencies=[Depends(RateLimitGate(Tier.STRICT))],
)
async def cleanup_expired_api_keys(
    principal: Principal = Depends(require_permission("admin")),
    runtime: Runtime = Depends(get_runtime),
) -> Envelope:
    count = await asyncio.to_thread(runtime.vault.cleanup_expired)
    logger.info("api_key_cleanup_requested", user_id=principal.id, deactivated=count)
    return _ok(CleanupResponse(deactivated=count).model_dump())


@router.get(
    "/api-keys/{key_id}",
    response_model=Envelope,
    dependencies=[Depends(RateLimitGate(Tier.RELAXED))],
)
async def get_api_key(
    key_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_bearer_principal),
    runtime: Runtime = Depends(get_runtime),
) -> Envelope:
    record = await asyncio.to_thread(runtime.vault.get_key, key_id, principal.id)
    return _ok(ApiKeyView.from_record(record).model_dump(mode="json"))


@router.patch(
    "/api-keys/{key_id}",
    response_model=Envelope,
    dependencies=[Depends(RateLimitGate(Tier.MODERATE))],
)
async def update_api_key(
    body: UpdateApiKeyRequest,
    key_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_bearer_principal),
    runtime: Runtime = Depends(get_runtime),
) -> Envelope:
    record = await asyncio.to_thread(
        runtime.vault.update_permissions, key_id, principal.id, body.permissions
    )
    return _ok(ApiKeyView.from_record(record).model_dump(mode="json"))


@router.delete(
    "/api-keys/{key_id}",
    response_model=Envelope,
    dependencies=[Depends(RateLimitGate(Tier.MODERATE))],
)
async def revoke_api_key(
    key_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_bearer_principal),
    runtime: Runtime = Depends(get_runtime),
) -> Envelope:
    await asyncio.to_thread(runtime.vault.revoke, key_id, principal.id)
    return _ok({"id": key_id, "revoked": True})


# -- CSP violation reports ------------------------------------------------------


def _violation_reports(payload: Any) -> List[Dict[str, Any]]:
    """Accept legacy ``{"csp-report": {...}}`` bodies and Reporting API arrays."""
    if isinstance(payload, dict) and isinstance(payload.get("csp-report"), dict):
        return [payload["csp-report"]]
    if isinstance(payload, list):
        return [
            entry["body"]
            for entry in payload
            if isinstance(entry, dict)
            and entry.get("type") == "csp-violation"
            and isinstance(entry.get("body"), dict)
        ]
    raise ValidationError("Unrecognised CSP report format")


def _report_field(report: Dict[str, Any], legacy: str, modern: str) -> Optional[str]:
    value = report.get(legacy, report.get(modern))
    return str(value)[:512] if value is not None else None


@router.post(
    "/security/csp-report",
    status_code=204,
    response_class=Response,
    dependencies=[Depends(RateLimitGate(Tier.WEBHOOK))],
)
async def csp_report(request: Request) -> None:
    body = await request.body()
    if len(body) > MAX_CSP_REPORT_BYTES:
        raise ValidationError("CSP report too large", detail={"max_bytes": MAX_CSP_REPORT_BYTES})
    try:
        payload = json.loads(body or b"null")
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("CSP report must be JSON")
    for report in _violation_reports(payload):
        logger.warning(
            "csp_violation_reported",
            **{
                legacy.replace("-", "_"): _report_field(report, legacy, modern)
                for legacy, modern in _REPORT_FIELDS
            },
        )
    return None


# -- real-time connections ------------------------------------------------------


_DENIAL_STATUS = {
    CLOSE_UNAUTHORIZED: 401,
    CLOSE_FORBIDDEN_ORIGIN: 403,
    CLOSE_RATE_LIMITED: 429,
}
DENIAL_EXTENSION = "websocket.http.response"


async def _reject_socket(
    ws: WebSocket, close_code: int, message: str, headers: Optional[Dict[str, str]] = None
) -> None:
    """Refuse the upgrade with an HTTP error envelope.

    A pre-accept close reaches most clients as a bare 403, so the close
    code is used only when the server cannot send a denial response.
    """
    if DENIAL_EXTENSION in (ws.scope.get("extensions") or {}):
        await ws.send_denial_response(
            error_response(_DENIAL_STATUS[close_code], message, headers=headers)
        )
    else:
        await ws.close(code=close_code, reason=message)


async def _admit_socket(
    ws: WebSocket, runtime: Runtime, *, optional: bool
) -> tuple[bool, Optional[SocketAuthContext]]:
    """Origin, rate limit and authentication, all before ``accept``."""
    origin = ws.headers.get("origin")
    if not runtime.origin_policy.socket_origin_allowed(ws.headers):
        logger.info("origin_denied", origin=origin, path=ws.url.path, transport="websocket")
        await _reject_socket(ws, CLOSE_FORBIDDEN_ORIGIN, "Origin not allowed")
        return False, None

    address = ws.client.host if ws.client else None
    decision = await runtime.limiter.check(Tier.RELAXED, client_key(address))
    if not decision.allowed:
        logger.warning("rate_limit_exceeded", tier=Tier.RELAXED.value, transport="websocket")
        await _reject_socket(
            ws, CLOSE_RATE_LIMITED, "Too many requests", decision.headers(runtime.limiter.now())
        )
        return False, None

    if optional:
        return True, await runtime.handshake.authenticate_optional(ws.headers, ws.cookies)
    try:
        return True, await runtime.handshake.authenticate(ws.headers, ws.cookies)
    except HandshakeRejected as exc:
        await _reject_socket(ws, exc.close_code, exc.message)
        return False, None


async def _serve_socket(ws: WebSocket, ctx: Optional[SocketAuthContext]) -> None:
    subprotocol = ctx.subprotocol if ctx else select_subprotocol(ws.headers)
    await ws.accept(subprotocol=subprotocol)
    await ws.send_json(
        {
            "event": "connected",
            "data": {
                "principal_id": ctx.principal_id if ctx else None,
                "permissions": list(ctx.permissions) if ctx else [],
                "anonymous": ctx is None,
            },
        }
    )
    try:
        while True:
            try:
                message = await ws.receive_json()
            except (json.JSONDecodeError, UnicodeDecodeError):
                await ws.send_json({"event": "error", "data": {"message": "invalid JSON"}})
                continue
            event = message.get("event") if isinstance(message, dict) else None
            if event == "ping":
                await ws.send_json({"event": "pong"})
            else:
                await ws.send_json(
                    {"event": "error", "data": {"message": "unsupported event"}}
                )
    except WebSocketDisconnect:
        logger.info(
            "socket_disconnected", user_id=ctx.principal_id if ctx else None
        )


@router.websocket("/ws")
async def socket_authenticated(ws: WebSocket) -> None:
    runtime: Runtime = ws.app.state.runtime
    admitted, ctx = await _admit_socket(ws, runtime, optional=False)
    if admitted:
        await _serve_socket(ws, ctx)


@router.websocket("/ws/public")
async def socket_public(ws: WebSocket) -> None:
    runtime: Runtime = ws.app.state.runtime
    admitted, ctx = await _admit_socket(ws, runtime, optional=True)
    if admitted:
        await _serve_socket(ws, ctx)
