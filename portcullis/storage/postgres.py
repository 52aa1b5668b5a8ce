from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from portcullis.logging import get_logger
from portcullis.storage.errors import ConstraintViolation
from portcullis.storage.models import ApiKeyRecord, User

# Timestamps are stored as naive UTC to match datetime.utcnow() in the models
_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        locked_until TIMESTAMP,
        created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_key (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        key_hash TEXT NOT NULL,
        key_prefix TEXT NOT NULL,
        permissions TEXT[] NOT NULL DEFAULT ARRAY['read'],
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        expires_at TIMESTAMP,
        ip_allowlist TEXT[] NOT NULL DEFAULT '{}',
        request_count BIGINT NOT NULL DEFAULT 0,
        last_used_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    # Prefix is a lookup index, not a uniqueness guarantee
    "CREATE INDEX IF NOT EXISTS api_key_prefix_active_idx ON api_key (key_prefix) WHERE is_active",
    "CREATE UNIQUE INDEX IF NOT EXISTS api_key_active_name_idx ON api_key (user_id, name) WHERE is_active",
    "CREATE INDEX IF NOT EXISTS api_key_user_created_idx ON api_key (user_id, created_at DESC)",
)


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed key-record and principal store."""

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            locked_until=row.get("locked_until"),
            created_at=row.get("created_at") or datetime.utcnow(),
            meta=row.get("meta"),
        )

    @staticmethod
    def _row_to_api_key(row: dict) -> ApiKeyRecord:
        return ApiKeyRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            key_hash=row["key_hash"],
            key_prefix=row["key_prefix"],
            permissions=list(row.get("permissions") or []),
            is_active=row.get("is_active", True),
            expires_at=row.get("expires_at"),
            ip_allowlist=list(row.get("ip_allowlist") or []),
            request_count=int(row.get("request_count") or 0),
            last_used_at=row.get("last_used_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # -- principals -------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, role, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, role, is_active, json.dumps(meta) if meta else None),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint="user_email"
            )
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_lock(self, user_id: str, locked_until: Optional[datetime]) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET locked_until = %s WHERE id = %s RETURNING *",
                (locked_until, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # -- api keys ---------------------------------------------------------

    def create_api_key(self, record: ApiKeyRecord) -> ApiKeyRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO api_key (
                        id, user_id, name, key_hash, key_prefix, permissions,
                        is_active, expires_at, ip_allowlist, request_count,
                        last_used_at, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.name,
                        record.key_hash,
                        record.key_prefix,
                        list(record.permissions),
                        record.is_active,
                        record.expires_at,
                        list(record.ip_allowlist),
                        record.request_count,
                        record.last_used_at,
                        record.created_at,
                        record.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "An API key with this name already exists",
                {"field": "name"},
                constraint="api_key_active_name",
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found", {"field": "user_id"}, constraint="api_key_user"
            )
        return self._row_to_api_key(row)

    def get_active_api_key_by_name(self, user_id: str, name: str) -> Optional[ApiKeyRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_key WHERE user_id = %s AND name = %s AND is_active",
                (user_id, name),
            ).fetchone()
        return self._row_to_api_key(row) if row else None

    def count_active_api_keys(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM api_key WHERE user_id = %s AND is_active",
                (user_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    def list_active_api_keys_by_prefix(self, key_prefix: str) -> List[ApiKeyRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM api_key
                WHERE key_prefix = %s AND is_active
                ORDER BY created_at ASC, id ASC
                """,
                (key_prefix,),
            ).fetchall()
        return [self._row_to_api_key(row) for row in rows]

    def get_api_key(
        self, key_id: str, *, user_id: Optional[str] = None, active_only: bool = False
    ) -> Optional[ApiKeyRecord]:
        if not _is_uuid(key_id):
            return None
        clauses = ["id = %s"]
        params: list[Any] = [key_id]
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if active_only:
            clauses.append("is_active")
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM api_key WHERE {' AND '.join(clauses)}", params
            ).fetchone()
        return self._row_to_api_key(row) if row else None

    def list_api_keys(self, user_id: str) -> List[ApiKeyRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM api_key
                WHERE user_id = %s AND is_active
                ORDER BY created_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_api_key(row) for row in rows]

    def deactivate_api_key(self, key_id: str, user_id: str, *, now: Optional[datetime] = None) -> bool:
        if not _is_uuid(key_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE api_key SET is_active = FALSE, updated_at = %s
                WHERE id = %s AND user_id = %s AND is_active
                RETURNING id
                """,
                (now or datetime.utcnow(), key_id, user_id),
            ).fetchone()
        return row is not None

    def update_api_key_permissions(
        self,
        key_id: str,
        user_id: str,
        permissions: Sequence[str],
        *,
        now: Optional[datetime] = None,
    ) -> Optional[ApiKeyRecord]:
        if not _is_uuid(key_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE api_key SET permissions = %s, updated_at = %s
                WHERE id = %s AND user_id = %s AND is_active
                RETURNING *
                """,
                (list(permissions), now or datetime.utcnow(), key_id, user_id),
            ).fetchone()
        return self._row_to_api_key(row) if row else None

    def record_api_key_usage(self, key_id: str, used_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE api_key
                SET request_count = request_count + 1, last_used_at = %s
                WHERE id = %s
                """,
                (used_at, key_id),
            )

    def deactivate_expired_api_keys(self, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE api_key SET is_active = FALSE, updated_at = %s
                WHERE is_active AND expires_at IS NOT NULL AND expires_at < %s
                """,
                (now, now),
            )
            return cursor.rowcount or 0
