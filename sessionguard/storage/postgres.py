from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionguard.logging import get_logger
from sessionguard.storage.errors import (
    ConstraintViolation,
    DuplicateTokenValue,
    UnknownOwner,
)
from sessionguard.storage.models import RefreshTokenRecord, User

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        owner_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE RESTRICT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        CHECK (NOT revoked OR (revoked_at IS NOT NULL AND revoked_at >= created_at))
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS refresh_token_owner_active_idx
        ON refresh_token (owner_id) WHERE NOT revoked
    """,
)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class PostgresStore:
    """Postgres-backed refresh token and principal store.

    Revocations are conditional updates on ``revoked = FALSE``; Postgres row
    locking serializes concurrent revokes of the same record so only one caller
    sees its update applied.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=["app_user", "refresh_token"])

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            is_active=row.get("is_active", True),
            created_at=_aware(row.get("created_at")) or datetime.now(timezone.utc),
            meta=row.get("meta"),
        )

    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            token=row["token"],
            owner_id=str(row["owner_id"]),
            created_at=_aware(row["created_at"]),
            expires_at=_aware(row["expires_at"]),
            revoked=bool(row["revoked"]),
            revoked_at=_aware(row.get("revoked_at")),
        )

    # principals
    def create_user(
        self,
        user_id: Optional[str] = None,
        *,
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = user_id or str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, is_active, meta)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, is_active, json.dumps(meta) if meta else None),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("user already exists", {"user_id": user_id})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    # refresh tokens
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, token, owner_id, created_at, expires_at, revoked, revoked_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.token,
                        record.owner_id,
                        record.created_at,
                        record.expires_at,
                        record.revoked,
                        record.revoked_at,
                    ),
                )
        except errors.UniqueViolation:
            raise DuplicateTokenValue(record.id)
        except errors.ForeignKeyViolation:
            raise UnknownOwner(record.owner_id)
        return record

    def get_refresh_token(self, record_id: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (record_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_refresh_token(row)

    def get_refresh_token_by_value(self, token: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_refresh_token(row)

    def revoke_refresh_token(self, record_id: str, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = GREATEST(%s, created_at)
                WHERE id = %s AND revoked = FALSE
                RETURNING id
                """,
                (revoked_at, record_id),
            ).fetchone()
        return row is not None

    def rotate_refresh_token(
        self, old_id: str, new_record: RefreshTokenRecord, revoked_at: datetime
    ) -> bool:
        """Consume ``old_id`` and insert ``new_record`` in one transaction."""
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        UPDATE refresh_token
                        SET revoked = TRUE, revoked_at = GREATEST(%s, created_at)
                        WHERE id = %s AND revoked = FALSE
                        RETURNING id
                        """,
                        (revoked_at, old_id),
                    ).fetchone()
                    if row is None:
                        return False
                    conn.execute(
                        """
                        INSERT INTO refresh_token (id, token, owner_id, created_at, expires_at, revoked, revoked_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            new_record.id,
                            new_record.token,
                            new_record.owner_id,
                            new_record.created_at,
                            new_record.expires_at,
                            new_record.revoked,
                            new_record.revoked_at,
                        ),
                    )
        except errors.UniqueViolation:
            raise DuplicateTokenValue(new_record.id)
        except errors.ForeignKeyViolation:
            raise UnknownOwner(new_record.owner_id)
        return True

    def revoke_owner_refresh_tokens(self, owner_id: str, revoked_at: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = GREATEST(%s, created_at)
                WHERE owner_id = %s AND revoked = FALSE
                """,
                (revoked_at, owner_id),
            )
            return result.rowcount

    def list_refresh_tokens(
        self, owner_id: str, *, active_only: bool = False
    ) -> List[RefreshTokenRecord]:
        query = "SELECT * FROM refresh_token WHERE owner_id = %s"
        if active_only:
            query += " AND revoked = FALSE"
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (owner_id,)).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]
