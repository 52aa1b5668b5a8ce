from __future__ import annotations

from typing import Any, Optional


class ConfigurationError(Exception):
    """Invalid security configuration detected while building the runtime.

    Raised only during startup and never mapped to a response; the process
    refuses to start instead of serving with a degraded policy. ``setting``
    names the offending field when one can be identified.
    """

    def __init__(self, message: str, *, setting: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.setting = setting


class ServiceError(Exception):
    """A request outcome the gateway answers with an error envelope.

    ``status_code`` and ``error_code`` are class-level defaults; a raise site
    may override either. ``message`` is shown to the client verbatim, so it
    never carries key material or internal state.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.status_code}, {self.message!r})"


class ValidationError(ServiceError):
    """Malformed input: key names, permissions, expiry, allowlists, reports."""


class AuthenticationError(ServiceError):
    """No usable credential, or the credential did not check out."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Caller is known but the origin, credential type or permission is wrong."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Tier ceiling reached; ``decision`` feeds the RateLimit-* headers."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after: int,
        decision: Any = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = max(1, int(retry_after))
        self.decision = decision


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"
