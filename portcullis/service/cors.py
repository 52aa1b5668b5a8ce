from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from portcullis.config import DEFAULT_CORS_EXPOSE_HEADERS, DEFAULT_CORS_HEADERS, DEFAULT_CORS_METHODS
from portcullis.logging import get_logger
from portcullis.service.errors import ConfigurationError

logger = get_logger(__name__)

WILDCARD = "*"
SAFE_SCHEMES = frozenset({"http", "https"})
# Schemes that execute or embed content when followed
DANGEROUS_SCHEMES = frozenset({"javascript", "data", "vbscript", "file", "blob", "about"})

DEFAULT_MAX_AGE = 86400


def is_safe_url(url: str, *, allow_relative: bool = True) -> bool:
    """True for http(s) URLs with a host, or same-origin absolute paths."""
    if not url or not isinstance(url, str):
        return False
    candidate = url.strip()
    if any(ch.isspace() or ord(ch) < 0x20 for ch in candidate):
        return False
    parts = urlsplit(candidate)
    if not parts.scheme:
        # "/path" is same-origin; "//host" is protocol-relative and is not
        return allow_relative and candidate.startswith("/") and not candidate.startswith("//")
    return parts.scheme.lower() in SAFE_SCHEMES and bool(parts.hostname)


def normalize_origin(origin: str) -> str:
    """Validate a configured origin and return its canonical form.

    An origin is scheme://host[:port] with no path, query, fragment or
    credentials. Raises ConfigurationError otherwise.
    """
    raw = (origin or "").strip()
    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    if scheme in DANGEROUS_SCHEMES:
        raise ConfigurationError(
            f"CORS origin uses a forbidden scheme: {scheme}", setting="cors_allow_origins"
        )
    if scheme not in SAFE_SCHEMES or not parts.hostname:
        raise ConfigurationError(
            f"CORS origin must be an http(s) URL: {raw!r}", setting="cors_allow_origins"
        )
    if parts.username or parts.password or parts.query or parts.fragment or parts.path not in ("", "/"):
        raise ConfigurationError(
            f"CORS origin must not carry a path, query or credentials: {raw!r}",
            setting="cors_allow_origins",
        )
    netloc = parts.hostname.lower()
    if ":" in netloc:
        netloc = f"[{netloc}]"
    if parts.port is not None:
        netloc = f"{netloc}:{parts.port}"
    return f"{scheme}://{netloc}"


@dataclass
class CorsConfig:
    """Every recognised CORS option; merged from presets and settings once."""

    enabled: bool = True
    origins: List[str] = field(default_factory=list)
    credentials: bool = True
    methods: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_METHODS))
    allowed_headers: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_HEADERS))
    exposed_headers: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_EXPOSE_HEADERS))
    max_age: int = DEFAULT_MAX_AGE
    production: bool = False


@dataclass(frozen=True)
class OriginPolicy:
    """Compiled CORS policy. Immutable; safe to share across requests."""

    enabled: bool
    allow_all: bool
    origins: FrozenSet[str]
    credentials: bool
    methods: Tuple[str, ...]
    allowed_headers: Tuple[str, ...]
    exposed_headers: Tuple[str, ...]
    max_age: int

    def allows_origin(self, origin: Optional[str]) -> bool:
        if not origin:
            return False
        if self.allow_all:
            return True
        return origin in self.origins

    def response_headers(self, origin: Optional[str]) -> Dict[str, str]:
        """Headers for an actual (non-preflight) response; empty means deny."""
        if not self.enabled or not origin:
            return {}
        if self.allow_all:
            headers = {"Access-Control-Allow-Origin": WILDCARD}
        elif origin in self.origins:
            headers = {"Access-Control-Allow-Origin": origin, "Vary": "Origin"}
            if self.credentials:
                headers["Access-Control-Allow-Credentials"] = "true"
        else:
            return {}
        if self.exposed_headers:
            headers["Access-Control-Expose-Headers"] = ", ".join(self.exposed_headers)
        return headers

    def preflight_headers(self, origin: Optional[str]) -> Optional[Dict[str, str]]:
        """Headers for an OPTIONS preflight, or None when the origin is denied."""
        headers = self.response_headers(origin)
        if not headers:
            return None
        headers["Access-Control-Allow-Methods"] = ", ".join(self.methods)
        headers["Access-Control-Allow-Headers"] = ", ".join(self.allowed_headers)
        headers["Access-Control-Max-Age"] = str(self.max_age)
        return headers

    def socket_origin_allowed(self, headers: Mapping[str, str]) -> bool:
        """Origin check for connection upgrades.

        Clients outside a browser send no Origin and are let through; a
        browser origin must satisfy the same rule as HTTP requests.
        """
        origin = headers.get("origin")
        if not self.enabled or origin is None:
            return True
        return self.allows_origin(origin)


class OriginPolicyBuilder:
    """Compile a CorsConfig into an OriginPolicy, validating it once."""

    @staticmethod
    def build(config: CorsConfig) -> OriginPolicy:
        raw_origins = [o.strip() for o in config.origins if o and o.strip()]
        allow_all = WILDCARD in raw_origins
        if allow_all and config.credentials:
            raise ConfigurationError(
                "CORS wildcard origin cannot be combined with credentials",
                setting="cors_allow_origins",
            )
        if allow_all and config.production:
            raise ConfigurationError(
                "CORS wildcard origin is not allowed in production",
                setting="cors_allow_origins",
            )
        origins = frozenset(normalize_origin(o) for o in raw_origins if o != WILDCARD)
        policy = OriginPolicy(
            enabled=config.enabled,
            allow_all=allow_all,
            origins=origins,
            credentials=config.credentials,
            methods=tuple(m.upper() for m in config.methods),
            allowed_headers=tuple(config.allowed_headers),
            exposed_headers=tuple(config.exposed_headers),
            max_age=int(config.max_age),
        )
        logger.info(
            "origin_policy_built",
            enabled=policy.enabled,
            allow_all=policy.allow_all,
            origins=sorted(policy.origins),
            credentials=policy.credentials,
        )
        return policy
