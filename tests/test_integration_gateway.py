"""End-to-end behaviour of the HTTP and WebSocket surface."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from starlette.testclient import WebSocketDenialResponse

from conftest import bearer_for
from portcullis.api.routes import DENIAL_EXTENSION, _reject_socket
from portcullis.service.handshake import CLOSE_FORBIDDEN_ORIGIN, CLOSE_UNAUTHORIZED
from portcullis.service.rate_limit import Tier, TierPolicy

LOCAL_ORIGIN = "http://localhost:3000"


def _issue(client, headers, name="ci", **body):
    response = client.post("/v1/api-keys", json={"name": name, **body}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestApiKeyLifecycle:
    def test_create_list_update_revoke(self, client, auth_headers):
        created = _issue(client, auth_headers, permissions=["read", "write"])
        plaintext = created["key"]
        view = created["api_key"]
        assert plaintext.startswith("pk_")
        assert view["key_prefix"] == plaintext[:8]
        assert "user_id" not in view and "key_hash" not in view
        assert plaintext not in view["masked_key"]
        assert created["warning"]

        listing = client.get("/v1/api-keys", headers=auth_headers).json()["data"]
        assert listing["total"] == 1
        assert "key" not in listing["items"][0]

        patched = client.patch(
            f"/v1/api-keys/{view['id']}", json={"permissions": ["admin"]}, headers=auth_headers
        )
        assert patched.json()["data"]["permissions"] == ["admin"]

        fetched = client.get(f"/v1/api-keys/{view['id']}", headers=auth_headers)
        assert fetched.json()["data"]["name"] == "ci"

        revoked = client.delete(f"/v1/api-keys/{view['id']}", headers=auth_headers)
        assert revoked.json()["data"] == {"id": view["id"], "revoked": True}
        assert client.delete(f"/v1/api-keys/{view['id']}", headers=auth_headers).status_code == 404

        response = client.get("/v1/me", headers={"X-API-Key": plaintext})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid API key"

    def test_duplicate_name_conflicts(self, client, auth_headers):
        _issue(client, auth_headers, name="deploy")
        response = client.post("/v1/api-keys", json={"name": "deploy"}, headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_foreign_key_is_not_found(self, client, auth_headers, runtime, memory_store):
        view = _issue(client, auth_headers)["api_key"]
        other = memory_store.create_user("intruder@example.com")
        response = client.delete(f"/v1/api-keys/{view['id']}", headers=bearer_for(runtime, other.id))
        assert response.status_code == 404

    def test_request_validation(self, client, auth_headers):
        response = client.post("/v1/api-keys", json={"name": "  "}, headers=auth_headers)
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["body", "name"]

        response = client.post(
            "/v1/api-keys", json={"name": "x", "user_id": "someone"}, headers=auth_headers
        )
        assert response.status_code == 400

        response = client.post(
            "/v1/api-keys", json={"name": "x", "expires_in": 5}, headers=auth_headers
        )
        assert response.status_code == 400


class TestAuthentication:
    def test_bearer_identity(self, client, auth_headers, user):
        body = client.get("/v1/me", headers=auth_headers).json()
        assert body["status"] == "ok"
        assert body["data"]["id"] == user.id
        assert body["data"]["credential"] == "bearer"

    def test_api_key_identity(self, client, auth_headers, user):
        created = _issue(client, auth_headers, permissions=["read"])
        response = client.get("/v1/me", headers={"X-API-Key": created["key"]})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == user.id
        assert data["credential"] == "api_key"
        assert data["key_id"] == created["api_key"]["id"]
        assert data["permissions"] == ["read"]

    def test_api_key_cannot_manage_keys(self, client, auth_headers):
        created = _issue(client, auth_headers)
        response = client.get("/v1/api-keys", headers={"X-API-Key": created["key"]})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_deactivated_owner_key_looks_invalid(self, client, auth_headers, user, memory_store):
        created = _issue(client, auth_headers)
        memory_store.set_user_active(user.id, False)
        response = client.get("/v1/me", headers={"X-API-Key": created["key"]})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid API key"

    def test_missing_and_bad_credentials(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Authentication required"
        assert client.get("/v1/me", headers={"Authorization": "Bearer junk"}).status_code == 401
        assert client.get("/v1/me", headers={"X-API-Key": "pk_" + "0" * 64}).status_code == 401

    def test_expired_token(self, client, runtime, user):
        response = client.get("/v1/me", headers=bearer_for(runtime, user.id, ttl=-3600))
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Token expired"

    def test_cleanup_requires_admin(self, client, auth_headers, runtime, memory_store):
        assert client.post("/v1/api-keys/cleanup", headers=auth_headers).status_code == 403
        admin = memory_store.create_user("admin@example.com", role="admin")
        response = client.post("/v1/api-keys/cleanup", headers=bearer_for(runtime, admin.id))
        assert response.status_code == 200
        assert response.json()["data"] == {"deactivated": 0}


class TestRateLimits:
    def test_headers_on_success(self, client, auth_headers):
        response = client.get("/v1/me", headers=auth_headers)
        assert response.headers["RateLimit-Limit"] == "300"
        assert response.headers["RateLimit-Remaining"] == "299"
        assert "Retry-After" not in response.headers

    def test_strict_tier_rejects_sixteenth(self, client, runtime, memory_store):
        admin = memory_store.create_user("admin@example.com", role="admin")
        headers = bearer_for(runtime, admin.id)
        for _ in range(15):
            assert client.post("/v1/api-keys/cleanup", headers=headers).status_code == 200
        response = client.post("/v1/api-keys/cleanup", headers=headers)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.json()["error"]["message"] == "Too many requests"
        assert response.headers["RateLimit-Remaining"] == "0"
        assert int(response.headers["Retry-After"]) > 0
        # Other tiers count separately
        assert client.get("/v1/me", headers=headers).status_code == 200

    def test_unauthenticated_requests_count(self, client):
        for _ in range(15):
            client.post("/v1/api-keys/cleanup")
        assert client.post("/v1/api-keys/cleanup").status_code == 429

    def test_principals_behind_one_address_share_the_count(
        self, client, runtime, memory_store, auth_headers
    ):
        runtime.limiter.policies[Tier.RELAXED] = TierPolicy(2, 900)
        other = memory_store.create_user("colleague@example.com")
        assert client.get("/v1/me", headers=auth_headers).status_code == 200
        assert client.get("/v1/me", headers=auth_headers).status_code == 200
        response = client.get("/v1/me", headers=bearer_for(runtime, other.id))
        assert response.status_code == 429


class TestSecurityHeaders:
    def test_static_headers_and_request_id(self, client, auth_headers):
        response = client.get("/v1/me", headers={**auth_headers, "X-Request-ID": "req-42"})
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"].startswith("no-store")
        assert response.headers["X-Request-ID"] == "req-42"
        assert "Strict-Transport-Security" not in response.headers

    def test_csp_header_with_fresh_nonce(self, client):
        first = client.get("/healthz").headers["Content-Security-Policy-Report-Only"]
        second = client.get("/healthz").headers["Content-Security-Policy-Report-Only"]
        assert first.startswith("default-src 'self'")
        assert "'nonce-" in first
        assert first != second

    def test_cors_actual_request(self, client):
        response = client.get("/healthz", headers={"Origin": LOCAL_ORIGIN})
        assert response.headers["Access-Control-Allow-Origin"] == LOCAL_ORIGIN
        assert response.headers["Access-Control-Allow-Credentials"] == "true"
        assert "Origin" in response.headers["Vary"]
        denied = client.get("/healthz", headers={"Origin": "https://evil.example"})
        assert "Access-Control-Allow-Origin" not in denied.headers

    def test_preflight(self, client):
        allowed = client.options(
            "/v1/api-keys",
            headers={"Origin": LOCAL_ORIGIN, "Access-Control-Request-Method": "POST"},
        )
        assert allowed.status_code == 204
        assert "POST" in allowed.headers["Access-Control-Allow-Methods"]
        assert allowed.headers["Access-Control-Max-Age"] == "86400"

        denied = client.options(
            "/v1/api-keys",
            headers={"Origin": "https://evil.example", "Access-Control-Request-Method": "POST"},
        )
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "forbidden"
        assert denied.headers["X-Content-Type-Options"] == "nosniff"

    def test_server_error_keeps_policy_headers(self, app):
        async def explode():
            raise RuntimeError("connection to db refused")

        app.add_api_route("/v1/explode", explode)
        with TestClient(app) as client:
            response = client.get(
                "/v1/explode", headers={"Origin": LOCAL_ORIGIN, "X-Request-ID": "req-500"}
            )
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
        assert body["request_id"] == "req-500"
        assert response.headers["X-Request-ID"] == "req-500"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Access-Control-Allow-Origin"] == LOCAL_ORIGIN
        assert "'nonce-" in response.headers["Content-Security-Policy-Report-Only"]

    def test_healthz(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"] == {"status": "not_configured"}


class TestCspReports:
    def test_legacy_report(self, client):
        report = {"csp-report": {"document-uri": "https://app.example/", "violated-directive": "script-src"}}
        response = client.post(
            "/v1/security/csp-report",
            content=json.dumps(report),
            headers={"Content-Type": "application/csp-report"},
        )
        assert response.status_code == 204
        assert response.content == b""
        assert response.headers["RateLimit-Limit"] == "1000"

    def test_reporting_api_array(self, client):
        reports = [
            {"type": "csp-violation", "body": {"documentURL": "https://app.example/", "effectiveDirective": "img-src"}},
            {"type": "deprecation", "body": {}},
        ]
        assert client.post("/v1/security/csp-report", json=reports).status_code == 204

    def test_rejected_bodies(self, client):
        assert client.post("/v1/security/csp-report", content=b"not json").status_code == 400
        assert client.post("/v1/security/csp-report", json={"unexpected": 1}).status_code == 400
        too_big = b'{"csp-report": {"x": "' + b"a" * (64 * 1024) + b'"}}'
        response = client.post("/v1/security/csp-report", content=too_big)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "CSP report too large"


def _token(runtime, user_id) -> str:
    return bearer_for(runtime, user_id)["Authorization"].split(" ", 1)[1]


class TestWebSockets:
    def test_subprotocol_handshake(self, client, runtime, user):
        token = _token(runtime, user.id)
        with client.websocket_connect(
            "/v1/ws", subprotocols=["authorization", f"Bearer_{token}"]
        ) as ws:
            assert ws.accepted_subprotocol == "authorization"
            hello = ws.receive_json()
            assert hello["event"] == "connected"
            assert hello["data"]["principal_id"] == user.id
            assert hello["data"]["anonymous"] is False
            ws.send_json({"event": "ping"})
            assert ws.receive_json() == {"event": "pong"}
            ws.send_json({"event": "shout"})
            assert ws.receive_json()["event"] == "error"

    def test_header_token(self, client, runtime, user):
        with client.websocket_connect("/v1/ws", headers=bearer_for(runtime, user.id)) as ws:
            assert ws.accepted_subprotocol is None
            assert ws.receive_json()["data"]["principal_id"] == user.id

    def test_missing_token_is_denied_before_accept(self, client):
        with pytest.raises(WebSocketDenialResponse) as exc:
            with client.websocket_connect("/v1/ws"):
                pass
        assert exc.value.status_code == 401
        assert exc.value.json()["error"] == {
            "code": "unauthorized",
            "message": "Authentication required",
            "details": None,
        }

    def test_expired_token_has_its_own_message(self, client, runtime, user):
        expired = bearer_for(runtime, user.id, ttl=-3600)
        with pytest.raises(WebSocketDenialResponse) as exc:
            with client.websocket_connect("/v1/ws", headers=expired):
                pass
        assert exc.value.status_code == 401
        assert exc.value.json()["error"]["message"] == "Token expired"

    def test_query_token_is_ignored(self, client, runtime, user):
        with pytest.raises(WebSocketDenialResponse) as exc:
            with client.websocket_connect(f"/v1/ws?token={_token(runtime, user.id)}"):
                pass
        assert exc.value.status_code == 401

    def test_foreign_origin(self, client, runtime, user):
        with pytest.raises(WebSocketDenialResponse) as exc:
            with client.websocket_connect(
                "/v1/ws", headers={"Origin": "https://evil.example", **bearer_for(runtime, user.id)}
            ):
                pass
        assert exc.value.status_code == 403
        assert exc.value.json()["error"]["code"] == "forbidden"

    def test_rate_limited_upgrade(self, client, runtime, user):
        runtime.limiter.policies[Tier.RELAXED] = TierPolicy(1, 900)
        headers = bearer_for(runtime, user.id)
        with client.websocket_connect("/v1/ws", headers=headers) as ws:
            ws.receive_json()
        with pytest.raises(WebSocketDenialResponse) as exc:
            with client.websocket_connect("/v1/ws", headers=headers):
                pass
        assert exc.value.status_code == 429
        assert exc.value.json()["error"]["code"] == "rate_limited"
        assert int(exc.value.headers["Retry-After"]) >= 1
        assert exc.value.headers["RateLimit-Remaining"] == "0"

    async def test_close_code_when_server_cannot_send_denial(self):
        ws = MagicMock()
        ws.scope = {"type": "websocket", "extensions": {}}
        ws.close = AsyncMock()
        ws.send_denial_response = AsyncMock()
        await _reject_socket(ws, CLOSE_UNAUTHORIZED, "Token expired")
        ws.close.assert_awaited_once_with(code=CLOSE_UNAUTHORIZED, reason="Token expired")
        ws.send_denial_response.assert_not_awaited()

    async def test_denial_response_when_server_supports_it(self):
        ws = MagicMock()
        ws.scope = {"type": "websocket", "extensions": {DENIAL_EXTENSION: {}}}
        ws.close = AsyncMock()
        ws.send_denial_response = AsyncMock()
        await _reject_socket(ws, CLOSE_FORBIDDEN_ORIGIN, "Origin not allowed")
        response = ws.send_denial_response.await_args.args[0]
        assert response.status_code == 403
        assert json.loads(response.body)["error"]["message"] == "Origin not allowed"
        ws.close.assert_not_awaited()

    def test_public_socket_is_anonymous_without_token(self, client):
        with client.websocket_connect("/v1/ws/public") as ws:
            hello = ws.receive_json()
            assert hello["data"]["anonymous"] is True
            assert hello["data"]["principal_id"] is None

    def test_public_socket_with_cookie(self, client, runtime, user):
        with client.websocket_connect(
            "/v1/ws/public", headers={"Cookie": f"token={_token(runtime, user.id)}"}
        ) as ws:
            assert ws.receive_json()["data"]["principal_id"] == user.id
