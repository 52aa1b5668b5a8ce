from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from ipaddress import IPv6Address, ip_address
from typing import Callable, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from portcullis.logging import get_logger
from portcullis.service.errors import ConflictError, NotFoundError, ValidationError
from portcullis.service.hashing import SecretHasher
from portcullis.storage.errors import ConstraintViolation
from portcullis.storage.models import ApiKeyRecord, User

logger = get_logger(__name__)

KEY_PREFIX_LENGTH = 8
KEY_RANDOM_BYTES = 32
MAX_KEYS_PER_PRINCIPAL = 10
NAME_MAX_LENGTH = 100
EXPIRES_IN_MIN_SECONDS = 24 * 60 * 60
EXPIRES_IN_MAX_SECONDS = 365 * 24 * 60 * 60
DEFAULT_PERMISSIONS = ("read",)
VALID_PERMISSIONS = frozenset(
    {
        "read",
        "write",
        "execute",
        "workflows:read",
        "workflows:write",
        "workflows:execute",
        "workflows:delete",
        "credentials:read",
        "credentials:write",
        "executions:read",
        "admin",
    }
)


class KeyStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_api_key(self, record: ApiKeyRecord) -> ApiKeyRecord: ...

    def get_active_api_key_by_name(self, user_id: str, name: str) -> Optional[ApiKeyRecord]: ...

    def count_active_api_keys(self, user_id: str) -> int: ...

    def list_active_api_keys_by_prefix(self, key_prefix: str) -> List[ApiKeyRecord]: ...

    def get_api_key(
        self, key_id: str, *, user_id: Optional[str] = None, active_only: bool = False
    ) -> Optional[ApiKeyRecord]: ...

    def list_api_keys(self, user_id: str) -> List[ApiKeyRecord]: ...

    def deactivate_api_key(self, key_id: str, user_id: str, *, now: Optional[datetime] = None) -> bool: ...

    def update_api_key_permissions(
        self,
        key_id: str,
        user_id: str,
        permissions: Sequence[str],
        *,
        now: Optional[datetime] = None,
    ) -> Optional[ApiKeyRecord]: ...

    def record_api_key_usage(self, key_id: str, used_at: datetime) -> None: ...

    def deactivate_expired_api_keys(self, now: datetime) -> int: ...


# -- input normalisation (shared with the request schemas) -----------------


def normalize_name(name: str) -> str:
    trimmed = (name or "").strip()
    if not trimmed or len(trimmed) > NAME_MAX_LENGTH:
        raise ValidationError(
            f"Name must be between 1 and {NAME_MAX_LENGTH} characters",
            detail={"field": "name"},
        )
    return trimmed


def normalize_permissions(permissions: Optional[Iterable[str]]) -> List[str]:
    if permissions is None:
        return list(DEFAULT_PERMISSIONS)
    ordered: List[str] = []
    for perm in permissions:
        if perm not in VALID_PERMISSIONS:
            raise ValidationError(
                f"Invalid permission: {perm}",
                detail={"field": "permissions", "allowed": sorted(VALID_PERMISSIONS)},
            )
        if perm not in ordered:
            ordered.append(perm)
    if not ordered:
        raise ValidationError(
            "At least one permission is required", detail={"field": "permissions"}
        )
    return ordered


def normalize_expires_in(expires_in: Optional[int]) -> Optional[int]:
    if expires_in is None:
        return None
    if not EXPIRES_IN_MIN_SECONDS <= int(expires_in) <= EXPIRES_IN_MAX_SECONDS:
        raise ValidationError(
            "Expiration must be between 1 day and 1 year",
            detail={
                "field": "expires_in",
                "min": EXPIRES_IN_MIN_SECONDS,
                "max": EXPIRES_IN_MAX_SECONDS,
            },
        )
    return int(expires_in)


def normalize_ip_allowlist(entries: Optional[Iterable[str]]) -> List[str]:
    normalized: List[str] = []
    for raw in entries or []:
        try:
            addr = str(_canonical_ip(raw))
        except ValueError:
            raise ValidationError(
                f"Invalid IP address: {raw}", detail={"field": "ip_allowlist"}
            )
        if addr not in normalized:
            normalized.append(addr)
    return normalized


def _canonical_ip(raw: str):
    addr = ip_address(str(raw).strip())
    if isinstance(addr, IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def mask_key(record: ApiKeyRecord) -> str:
    """Display form of a key: its prefix plus the tail of the record id."""
    return f"{record.key_prefix}****...****{record.id[-4:]}"


# -- background usage tracking --------------------------------------------


class UsageRecorder:
    """Fire-and-forget dispatch of usage counter updates.

    ``record`` schedules the store write on a worker thread and returns
    immediately. Failures end in a log line; nothing flows back to the
    authentication that triggered the write.
    """

    def __init__(self, store: KeyStore) -> None:
        self.store = store
        self._pending: Set[asyncio.Task] = set()

    def record(self, key_id: str, used_at: datetime) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (CLI/sync callers): do the write inline, still best effort
            self._write(key_id, used_at)
            return
        task = loop.create_task(self._run(key_id, used_at))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run(self, key_id: str, used_at: datetime) -> None:
        try:
            await asyncio.to_thread(self.store.record_api_key_usage, key_id, used_at)
        except Exception as exc:
            logger.warning(
                "api_key_usage_update_failed",
                key_id=key_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _write(self, key_id: str, used_at: datetime) -> None:
        try:
            self.store.record_api_key_usage(key_id, used_at)
        except Exception as exc:
            logger.warning(
                "api_key_usage_update_failed",
                key_id=key_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for in-flight updates; used at shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# -- issuance ---------------------------------------------------------------


class KeyVault:
    """Issues, lists, revokes and expires API keys for principals."""

    def __init__(
        self,
        store: KeyStore,
        hasher: SecretHasher,
        *,
        key_prefix: str = "pk",
        max_keys_per_principal: int = MAX_KEYS_PER_PRINCIPAL,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.key_prefix = key_prefix
        self.max_keys_per_principal = max_keys_per_principal
        self._clock = clock

    def generate_key(self) -> str:
        return f"{self.key_prefix}_{secrets.token_hex(KEY_RANDOM_BYTES)}"

    async def issue(
        self,
        principal_id: str,
        name: str,
        permissions: Optional[Sequence[str]] = None,
        expires_in: Optional[int] = None,
        ip_allowlist: Optional[Sequence[str]] = None,
    ) -> Tuple[ApiKeyRecord, str]:
        """Create a key for ``principal_id``; the plaintext is returned once.

        Checks run in a fixed order: principal exists, active-key quota,
        then name uniqueness among the principal's active keys.
        """
        name = normalize_name(name)
        perms = normalize_permissions(permissions)
        expires_in = normalize_expires_in(expires_in)
        allowlist = normalize_ip_allowlist(ip_allowlist)

        if not self.store.get_user(principal_id):
            raise NotFoundError("User not found", detail={"field": "user_id"})
        if self.store.count_active_api_keys(principal_id) >= self.max_keys_per_principal:
            raise ValidationError(
                f"Maximum number of API keys ({self.max_keys_per_principal}) reached. "
                "Please revoke an existing key first.",
                detail={"limit": self.max_keys_per_principal},
            )
        if self.store.get_active_api_key_by_name(principal_id, name):
            raise ConflictError(
                "An API key with this name already exists", detail={"field": "name"}
            )

        plaintext = self.generate_key()
        digest = await asyncio.to_thread(self.hasher.hash, plaintext)
        now = self._clock()
        record = ApiKeyRecord.new(
            principal_id,
            name,
            digest,
            plaintext[:KEY_PREFIX_LENGTH],
            permissions=perms,
            expires_at=now + timedelta(seconds=expires_in) if expires_in else None,
            ip_allowlist=allowlist,
            now=now,
        )
        try:
            stored = self.store.create_api_key(record)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent issue or principal deletion
            if exc.constraint == "api_key_user":
                raise NotFoundError("User not found", detail={"field": "user_id"}) from exc
            raise ConflictError(exc.message, detail=exc.detail) from exc

        logger.info(
            "api_key_issued",
            key_id=stored.id,
            user_id=principal_id,
            name=name,
            key_prefix=stored.key_prefix,
            permissions=perms,
            expires_at=stored.expires_at.isoformat() if stored.expires_at else None,
        )
        return stored, plaintext

    def list_keys(self, principal_id: str) -> List[ApiKeyRecord]:
        return self.store.list_api_keys(principal_id)

    def get_key(self, key_id: str, principal_id: str) -> ApiKeyRecord:
        record = self.store.get_api_key(key_id, user_id=principal_id, active_only=True)
        if not record:
            raise NotFoundError("API key not found")
        return record

    @staticmethod
    def masked(record: ApiKeyRecord) -> str:
        return mask_key(record)

    def revoke(self, key_id: str, principal_id: str) -> None:
        if not self.store.deactivate_api_key(key_id, principal_id, now=self._clock()):
            raise NotFoundError("API key not found")
        logger.info("api_key_revoked", key_id=key_id, user_id=principal_id)

    def update_permissions(
        self, key_id: str, principal_id: str, permissions: Sequence[str]
    ) -> ApiKeyRecord:
        perms = normalize_permissions(permissions)
        record = self.store.update_api_key_permissions(
            key_id, principal_id, perms, now=self._clock()
        )
        if not record:
            raise NotFoundError("API key not found")
        logger.info(
            "api_key_permissions_updated",
            key_id=key_id,
            user_id=principal_id,
            permissions=perms,
        )
        return record

    def cleanup_expired(self) -> int:
        """Deactivate every active key whose expiry has passed.

        Already-deactivated keys are excluded, so reruns never recount.
        """
        count = self.store.deactivate_expired_api_keys(self._clock())
        if count > 0:
            logger.info("expired_api_keys_cleaned", count=count)
        return count


# -- authentication ---------------------------------------------------------


@dataclass(frozen=True)
class ApiKeyMatch:
    principal_id: str
    key_id: str
    permissions: Tuple[str, ...]


class KeyAuthenticator:
    """Resolve a presented plaintext key to its owning principal.

    Every failure (unknown, wrong, revoked, expired, IP-blocked, internal
    error) returns ``None`` with no reason attached.
    """

    def __init__(
        self,
        store: KeyStore,
        hasher: SecretHasher,
        *,
        key_prefix: str = "pk",
        usage: Optional[UsageRecorder] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self._literal = f"{key_prefix}_"
        self.usage = usage or UsageRecorder(store)
        self._clock = clock

    async def validate(self, plaintext_key: str, source_ip: Optional[str] = None) -> Optional[str]:
        match = await self.authenticate(plaintext_key, source_ip)
        return match.principal_id if match else None

    async def authenticate(
        self, plaintext_key: str, source_ip: Optional[str] = None
    ) -> Optional[ApiKeyMatch]:
        try:
            if (
                not plaintext_key
                or len(plaintext_key) <= KEY_PREFIX_LENGTH
                or not plaintext_key.startswith(self._literal)
            ):
                return None
            candidates = await asyncio.to_thread(
                self.store.list_active_api_keys_by_prefix,
                plaintext_key[:KEY_PREFIX_LENGTH],
            )
            record = await asyncio.to_thread(self._first_match, plaintext_key, candidates)
            if record is None:
                return None

            now = self._clock()
            if record.is_expired(now):
                logger.warning("api_key_expired_attempt", key_id=record.id)
                return None
            if record.ip_allowlist and not self._ip_allowed(source_ip, record.ip_allowlist):
                logger.warning("api_key_ip_denied", key_id=record.id, source_ip=source_ip)
                return None

            self.usage.record(record.id, now)
            return ApiKeyMatch(
                principal_id=record.user_id,
                key_id=record.id,
                permissions=tuple(record.permissions),
            )
        except Exception as exc:
            logger.error(
                "api_key_validation_error", error_type=type(exc).__name__, error=str(exc)
            )
            return None

    def _first_match(
        self, plaintext_key: str, candidates: Sequence[ApiKeyRecord]
    ) -> Optional[ApiKeyRecord]:
        # Ordered scan; prefixes are not unique
        for candidate in candidates:
            if self.hasher.compare(plaintext_key, candidate.key_hash):
                return candidate
        return None

    @staticmethod
    def _ip_allowed(source_ip: Optional[str], allowlist: Sequence[str]) -> bool:
        if not source_ip:
            return False
        try:
            source = _canonical_ip(source_ip)
        except ValueError:
            return False
        for entry in allowlist:
            try:
                if _canonical_ip(entry) == source:
                    return True
            except ValueError:
                continue
        return False
