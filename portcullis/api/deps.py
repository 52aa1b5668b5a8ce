from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request, Response

from portcullis.logging import get_logger
from portcullis.service.errors import AuthenticationError, ForbiddenError
from portcullis.service.principals import CREDENTIAL_BEARER, Principal, PrincipalInactive
from portcullis.service.rate_limit import Tier, client_key
from portcullis.service.runtime import Runtime
from portcullis.service.tokens import extract_bearer

logger = get_logger(__name__)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


class RateLimitGate:
    """Route dependency that counts the request against ``tier``.

    Declared in the route's ``dependencies`` so it runs before principal
    resolution; unauthenticated floods are throttled before any hashing.
    No principal is known yet, so the key is the source address alone and
    every caller behind one address shares the tier's count.
    """

    def __init__(self, tier: Tier) -> None:
        self.tier = Tier(tier)

    async def __call__(
        self, request: Request, response: Response, runtime: Runtime = Depends(get_runtime)
    ) -> None:
        key = client_key(client_ip(request))
        decision = await runtime.limiter.enforce(self.tier, key)
        response.headers.update(decision.headers(runtime.limiter.now()))
        request.state.rate_limit = decision


async def get_principal(request: Request, runtime: Runtime = Depends(get_runtime)) -> Principal:
    """Resolve the caller from the API-key header, else a bearer token."""
    presented_key = request.headers.get(runtime.settings.api_key_header)
    if presented_key:
        match = await runtime.authenticator.authenticate(presented_key, client_ip(request))
        if match is None:
            raise AuthenticationError("Invalid API key")
        try:
            principal = await runtime.principals.from_api_key(match)
        except PrincipalInactive:
            # Same answer as a wrong key
            raise AuthenticationError("Invalid API key")
    else:
        token = extract_bearer(request.headers.get("authorization"))
        if not token:
            raise AuthenticationError("Authentication required")
        # TokenExpired, TokenInvalid and PrincipalInactive are all 401s
        principal = await runtime.principals.from_bearer(token)

    request.state.principal = principal
    request.state.principal_id = principal.id
    return principal


async def require_bearer_principal(principal: Principal = Depends(get_principal)) -> Principal:
    if principal.credential != CREDENTIAL_BEARER:
        raise ForbiddenError("API keys cannot be used to manage API keys")
    return principal


def require_permission(permission: str):
    async def _dependency(principal: Principal = Depends(require_bearer_principal)) -> Principal:
        if not principal.has_permission(permission):
            logger.warning("permission_denied", user_id=principal.id, permission=permission)
            raise ForbiddenError(
                "Insufficient permissions", detail={"required": permission}
            )
        return principal

    return _dependency
