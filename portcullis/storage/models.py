from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class User:
    """A principal that can own API keys and open connections."""

    id: str
    email: str
    role: str = "user"
    is_active: bool = True
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class ApiKeyRecord:
    """Persisted API key. Holds the hash and prefix, never the plaintext."""

    id: str
    user_id: str
    name: str
    key_hash: str
    key_prefix: str
    permissions: List[str] = field(default_factory=lambda: ["read"])
    is_active: bool = True
    expires_at: Optional[datetime] = None
    ip_allowlist: List[str] = field(default_factory=list)
    request_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        name: str,
        key_hash: str,
        key_prefix: str,
        *,
        permissions: Optional[List[str]] = None,
        expires_at: Optional[datetime] = None,
        ip_allowlist: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> "ApiKeyRecord":
        created = now or datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            key_hash=key_hash,
            key_prefix=key_prefix,
            permissions=list(permissions) if permissions else ["read"],
            expires_at=expires_at,
            ip_allowlist=list(ip_allowlist or []),
            created_at=created,
            updated_at=created,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def public_view(self) -> Dict[str, Any]:
        """Record fields safe to return to the owner (no hash)."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "key_prefix": self.key_prefix,
            "permissions": list(self.permissions),
            "is_active": self.is_active,
            "expires_at": self.expires_at,
            "ip_allowlist": list(self.ip_allowlist),
            "request_count": self.request_count,
            "last_used_at": self.last_used_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
