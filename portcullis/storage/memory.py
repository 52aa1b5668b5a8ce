from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from portcullis.logging import get_logger
from portcullis.storage.errors import ConstraintViolation
from portcullis.storage.models import ApiKeyRecord, User


def _copy_user(user: User) -> User:
    return replace(user, meta=dict(user.meta or {}))


def _copy_key(rec: ApiKeyRecord) -> ApiKeyRecord:
    return replace(rec, permissions=list(rec.permissions), ip_allowlist=list(rec.ip_allowlist))


class MemoryStore:
    """In-process key-record store with a JSON snapshot on disk.

    Records are indexed by id and by ``key_prefix``. The prefix index keeps
    insertion order, which is the order candidates are scanned in during
    authentication. Returned records are copies; callers never mutate the
    stored objects directly.
    """

    def __init__(self, fs_root: str = "/tmp/portcullis", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.api_keys: Dict[str, ApiKeyRecord] = {}
        self._prefix_index: Dict[str, List[str]] = {}
        # RLock so helpers can be called from already-locked methods
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- principals -------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint="user_email"
                )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                role=role,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return _copy_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return _copy_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return _copy_user(user) if user else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return _copy_user(user)

    def set_user_lock(self, user_id: str, locked_until: Optional[datetime]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.locked_until = locked_until
            self._persist_state()
            return _copy_user(user)

    # -- api keys ---------------------------------------------------------

    def create_api_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found", {"field": "user_id"}, constraint="api_key_user"
                )
            if self._find_active_by_name(record.user_id, record.name):
                raise ConstraintViolation(
                    "An API key with this name already exists",
                    {"field": "name"},
                    constraint="api_key_active_name",
                )
            stored = _copy_key(record)
            self.api_keys[stored.id] = stored
            self._prefix_index.setdefault(stored.key_prefix, []).append(stored.id)
            self._persist_state()
            return _copy_key(stored)

    def _find_active_by_name(self, user_id: str, name: str) -> Optional[ApiKeyRecord]:
        return next(
            (
                rec
                for rec in self.api_keys.values()
                if rec.user_id == user_id and rec.name == name and rec.is_active
            ),
            None,
        )

    def get_active_api_key_by_name(self, user_id: str, name: str) -> Optional[ApiKeyRecord]:
        with self._data_lock:
            rec = self._find_active_by_name(user_id, name)
            return _copy_key(rec) if rec else None

    def count_active_api_keys(self, user_id: str) -> int:
        with self._data_lock:
            return sum(
                1 for rec in self.api_keys.values() if rec.user_id == user_id and rec.is_active
            )

    def list_active_api_keys_by_prefix(self, key_prefix: str) -> List[ApiKeyRecord]:
        with self._data_lock:
            ids = self._prefix_index.get(key_prefix, [])
            return [
                _copy_key(self.api_keys[key_id])
                for key_id in ids
                if self.api_keys[key_id].is_active
            ]

    def get_api_key(
        self, key_id: str, *, user_id: Optional[str] = None, active_only: bool = False
    ) -> Optional[ApiKeyRecord]:
        with self._data_lock:
            rec = self.api_keys.get(key_id)
            if not rec:
                return None
            if user_id is not None and rec.user_id != user_id:
                return None
            if active_only and not rec.is_active:
                return None
            return _copy_key(rec)

    def list_api_keys(self, user_id: str) -> List[ApiKeyRecord]:
        with self._data_lock:
            results = [
                _copy_key(rec)
                for rec in self.api_keys.values()
                if rec.user_id == user_id and rec.is_active
            ]
        return sorted(results, key=lambda r: r.created_at, reverse=True)

    def deactivate_api_key(self, key_id: str, user_id: str, *, now: Optional[datetime] = None) -> bool:
        with self._data_lock:
            rec = self.api_keys.get(key_id)
            if not rec or rec.user_id != user_id or not rec.is_active:
                return False
            rec.is_active = False
            rec.updated_at = now or datetime.utcnow()
            self._persist_state()
            return True

    def update_api_key_permissions(
        self,
        key_id: str,
        user_id: str,
        permissions: Sequence[str],
        *,
        now: Optional[datetime] = None,
    ) -> Optional[ApiKeyRecord]:
        with self._data_lock:
            rec = self.api_keys.get(key_id)
            if not rec or rec.user_id != user_id or not rec.is_active:
                return None
            rec.permissions = list(permissions)
            rec.updated_at = now or datetime.utcnow()
            self._persist_state()
            return _copy_key(rec)

    def record_api_key_usage(self, key_id: str, used_at: datetime) -> None:
        with self._data_lock:
            rec = self.api_keys.get(key_id)
            if not rec:
                return
            rec.request_count += 1
            rec.last_used_at = used_at
            self._persist_state()

    def deactivate_expired_api_keys(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                rec
                for rec in self.api_keys.values()
                if rec.is_active and rec.expires_at is not None and rec.expires_at < now
            ]
            for rec in expired:
                rec.is_active = False
                rec.updated_at = now
            if expired:
                self._persist_state()
            return len(expired)

    def verify_connection(self) -> None:
        if self.persist and not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    # -- snapshot ---------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "api_keys": [self._serialize_api_key(k) for k in self.api_keys.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.api_keys = {}
        self._prefix_index = {}
        for raw in data.get("api_keys", []):
            rec = self._deserialize_api_key(raw)
            self.api_keys[rec.id] = rec
            self._prefix_index.setdefault(rec.key_prefix, []).append(rec.id)
        self.logger.info(
            "memory_store_loaded", users=len(self.users), api_keys=len(self.api_keys)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "is_active": user.is_active,
            "locked_until": self._serialize_datetime(user.locked_until),
            "created_at": self._serialize_datetime(user.created_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            role=data.get("role", "user"),
            is_active=data.get("is_active", True),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            created_at=self._deserialize_datetime(data.get("created_at")) or datetime.utcnow(),
            meta=data.get("meta"),
        )

    def _serialize_api_key(self, rec: ApiKeyRecord) -> dict:
        return {
            "id": rec.id,
            "user_id": rec.user_id,
            "name": rec.name,
            "key_hash": rec.key_hash,
            "key_prefix": rec.key_prefix,
            "permissions": rec.permissions,
            "is_active": rec.is_active,
            "expires_at": self._serialize_datetime(rec.expires_at),
            "ip_allowlist": rec.ip_allowlist,
            "request_count": rec.request_count,
            "last_used_at": self._serialize_datetime(rec.last_used_at),
            "created_at": self._serialize_datetime(rec.created_at),
            "updated_at": self._serialize_datetime(rec.updated_at),
        }

    def _deserialize_api_key(self, data: dict) -> ApiKeyRecord:
        created = self._deserialize_datetime(data.get("created_at")) or datetime.utcnow()
        return ApiKeyRecord(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            name=data["name"],
            key_hash=data["key_hash"],
            key_prefix=data["key_prefix"],
            permissions=list(data.get("permissions") or ["read"]),
            is_active=data.get("is_active", True),
            expires_at=self._deserialize_datetime(data.get("expires_at")),
            ip_allowlist=list(data.get("ip_allowlist") or []),
            request_count=int(data.get("request_count", 0)),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            created_at=created,
            updated_at=self._deserialize_datetime(data.get("updated_at")) or created,
        )
