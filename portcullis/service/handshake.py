from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from http.cookies import CookieError, SimpleCookie
from typing import Callable, Dict, Mapping, Optional, Tuple

from portcullis.logging import get_logger
from portcullis.service.errors import AuthenticationError
from portcullis.service.principals import PrincipalDirectory, PrincipalInactive
from portcullis.service.tokens import TokenExpired, TokenInvalid, extract_bearer

logger = get_logger(__name__)

AUTH_SUBPROTOCOL = "authorization"
TOKEN_COOKIE = "token"
# Longest first so "authorization_Bearer_" is not read as a bare "Bearer_" miss
_PROTOCOL_TOKEN_PREFIXES = ("authorization_Bearer_", "Bearer_")

CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN_ORIGIN = 4403
CLOSE_RATE_LIMITED = 4429


class HandshakeRejected(AuthenticationError):
    """Connection upgrade refused; ``message`` is safe to send to the client."""

    close_code = CLOSE_UNAUTHORIZED


@dataclass(frozen=True)
class SocketAuthContext:
    """Identity attached to a connection once, at upgrade time."""

    principal_id: str
    permissions: Tuple[str, ...]
    verified_at: datetime
    role: str = "user"
    subprotocol: Optional[str] = None


def _lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def _offered_protocols(headers: Dict[str, str]) -> list[str]:
    raw = headers.get("sec-websocket-protocol") or ""
    return [entry.strip() for entry in raw.split(",") if entry.strip()]


def _cookie_token(headers: Dict[str, str], cookies: Optional[Mapping[str, str]]) -> Optional[str]:
    if cookies is not None:
        return cookies.get(TOKEN_COOKIE) or None
    raw = headers.get("cookie")
    if not raw:
        return None
    jar = SimpleCookie()
    try:
        jar.load(raw)
    except CookieError:
        return None
    morsel = jar.get(TOKEN_COOKIE)
    return morsel.value if morsel and morsel.value else None


def extract_token(
    headers: Mapping[str, str], cookies: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """Find a bearer token in the upgrade request.

    Sources, in order: a ``Bearer_<token>`` subprotocol entry, the
    Authorization header, the ``token`` cookie. The query string is never
    consulted; URLs end up in logs, history and Referer headers.
    """
    lowered = _lower_headers(headers)
    for entry in _offered_protocols(lowered):
        for prefix in _PROTOCOL_TOKEN_PREFIXES:
            if entry.startswith(prefix) and len(entry) > len(prefix):
                return entry[len(prefix):]
    token = extract_bearer(lowered.get("authorization"))
    if token:
        return token
    return _cookie_token(lowered, cookies)


def select_subprotocol(headers: Mapping[str, str]) -> Optional[str]:
    """Echo ``authorization`` when offered so the token itself is never echoed."""
    if AUTH_SUBPROTOCOL in _offered_protocols(_lower_headers(headers)):
        return AUTH_SUBPROTOCOL
    return None


class HandshakeAuthenticator:
    def __init__(
        self,
        principals: PrincipalDirectory,
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.principals = principals
        self._clock = clock

    async def authenticate(
        self, headers: Mapping[str, str], cookies: Optional[Mapping[str, str]] = None
    ) -> SocketAuthContext:
        token = extract_token(headers, cookies)
        if not token:
            logger.warning("handshake_rejected", reason="missing_token")
            raise HandshakeRejected("Authentication required")
        try:
            principal = await self.principals.from_bearer(token)
        except TokenExpired:
            logger.warning("handshake_rejected", reason="token_expired")
            raise HandshakeRejected("Token expired")
        except TokenInvalid:
            logger.warning("handshake_rejected", reason="token_invalid")
            raise HandshakeRejected("Invalid token")
        except PrincipalInactive as exc:
            logger.warning("handshake_rejected", reason="principal_inactive")
            raise HandshakeRejected(exc.message)
        except Exception as exc:
            logger.error(
                "handshake_rejected",
                reason="error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise HandshakeRejected("Authentication failed") from exc

        logger.info("handshake_authenticated", user_id=principal.id)
        return SocketAuthContext(
            principal_id=principal.id,
            permissions=principal.permissions,
            verified_at=self._clock(),
            role=principal.role,
            subprotocol=select_subprotocol(headers),
        )

    async def authenticate_optional(
        self, headers: Mapping[str, str], cookies: Optional[Mapping[str, str]] = None
    ) -> Optional[SocketAuthContext]:
        """Same pipeline; any failure yields an anonymous connection."""
        try:
            return await self.authenticate(headers, cookies)
        except HandshakeRejected:
            return None
