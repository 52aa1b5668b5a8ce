from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple

from portcullis.logging import get_logger
from portcullis.service.api_keys import ApiKeyMatch
from portcullis.service.errors import AuthenticationError
from portcullis.service.tokens import TokenVerifier, claim_permissions
from portcullis.storage.models import User

logger = get_logger(__name__)

CREDENTIAL_API_KEY = "api_key"
CREDENTIAL_BEARER = "bearer"


class PrincipalInactive(AuthenticationError):
    """Principal is unknown, deactivated or locked."""


@dataclass(frozen=True)
class Principal:
    id: str
    credential: str
    permissions: Tuple[str, ...] = ()
    role: str = "user"
    key_id: Optional[str] = None

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


class PrincipalDirectory:
    """Liveness checks and credential-to-principal resolution."""

    def __init__(
        self,
        store,
        verifier: TokenVerifier,
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self._clock = clock

    def require_live(self, user_id: Optional[str]) -> User:
        """Return the user if it exists, is active and is not locked."""
        user = self.store.get_user(user_id) if user_id else None
        if not user or not user.is_active:
            raise PrincipalInactive("User account not found or inactive")
        if user.is_locked(self._clock()):
            raise PrincipalInactive("Account is temporarily locked")
        return user

    def is_live(self, user_id: Optional[str]) -> bool:
        try:
            self.require_live(user_id)
        except PrincipalInactive:
            return False
        return True

    async def from_bearer(self, token: str) -> Principal:
        payload = self.verifier.verify(token)
        user = await asyncio.to_thread(self.require_live, payload.get("sub"))
        return Principal(
            id=user.id,
            credential=CREDENTIAL_BEARER,
            permissions=tuple(claim_permissions(payload, user.role)),
            role=user.role,
        )

    async def from_api_key(self, match: ApiKeyMatch) -> Principal:
        # Keys of a deactivated or locked owner stop working too
        user = await asyncio.to_thread(self.require_live, match.principal_id)
        return Principal(
            id=user.id,
            credential=CREDENTIAL_API_KEY,
            permissions=match.permissions,
            role=user.role,
            key_id=match.key_id,
        )
