from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Optional

from portcullis.logging import get_logger
from portcullis.service.errors import AuthenticationError

logger = get_logger(__name__)


class TokenInvalid(AuthenticationError):
    """Signature, algorithm, issuer, audience or shape check failed."""


class TokenExpired(AuthenticationError):
    """Token was well formed and signed but its ``exp`` has passed."""


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Token from an ``Authorization`` value; the scheme is case-insensitive."""
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class TokenVerifier:
    """HS256 JWT verification shared by HTTP and handshake authentication.

    Issuance is out of scope for the gateway; ``encode`` exists for the
    operator CLI and tests.
    """

    algorithm = "HS256"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock_skew_seconds: int = 120,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway = clock_skew_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings) -> "TokenVerifier":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock_skew_seconds=settings.jwt_clock_skew_seconds,
        )

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        claims = {"iss": self.issuer, "aud": self.audience, **payload}
        header_enc = _encode_segment(
            json.dumps({"alg": self.algorithm, "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> dict[str, Any]:
        """Return the claims of a valid token or raise TokenInvalid/TokenExpired."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalid("Invalid token")

        # Pin the algorithm so "none" or RS/HS confusion never verifies
        try:
            header = json.loads(_decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid("Invalid token")
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalid("Invalid token")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenInvalid("Invalid token")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid("Invalid token")
        if not isinstance(payload, dict):
            raise TokenInvalid("Invalid token")

        if payload.get("iss") != self.issuer:
            raise TokenInvalid("Invalid token")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenInvalid("Invalid token")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("Invalid token")
        if exp_ts <= self._clock() - self.leeway:
            raise TokenExpired("Token expired")
        if not payload.get("sub"):
            raise TokenInvalid("Invalid token")
        return payload


def claim_permissions(payload: dict[str, Any], role: Optional[str] = None) -> list[str]:
    """Permissions pass through from the ``permissions`` claim when present."""
    perms = payload.get("permissions")
    if isinstance(perms, list):
        return [str(p) for p in perms]
    return ["admin"] if (role or payload.get("role")) == "admin" else []
