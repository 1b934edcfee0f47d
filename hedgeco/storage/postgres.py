from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from hedgeco.logging import get_logger
from hedgeco.storage.errors import ConstraintViolation, StorageUnavailable
from hedgeco.storage.models import (
    USER_ROLES,
    USER_STATUSES,
    RefreshToken,
    RotationOutcome,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'INVESTOR',
        status TEXT NOT NULL DEFAULT 'PENDING_APPROVAL',
        email_verification_token TEXT,
        password_hash TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE RESTRICT,
        token_family TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        replaced_by_token_id TEXT REFERENCES refresh_token(id)
            DEFERRABLE INITIALLY DEFERRED
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_family_idx ON refresh_token (token_family)",
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    # At most one current token per family
    """
    CREATE UNIQUE INDEX IF NOT EXISTS refresh_token_current_per_family
        ON refresh_token (token_family)
        WHERE revoked_at IS NULL AND replaced_by_token_id IS NULL
    """,
)


class PostgresStore:
    """Postgres-backed store for users and the refresh-token ledger."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable(str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` and ``refresh_token`` tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            role=row["role"],
            status=row["status"],
            email_verification_token=row.get("email_verification_token"),
            password_hash=row.get("password_hash"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=row["id"],
            user_id=row["user_id"],
            token_family=row["token_family"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            replaced_by_token_id=row.get("replaced_by_token_id"),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = "INVESTOR",
        status: str = "ACTIVE",
        password_hash: Optional[str] = None,
        email_verification_token: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        if role not in USER_ROLES:
            raise ValueError(f"unknown role {role!r}")
        if status not in USER_STATUSES:
            raise ValueError(f"unknown status {status!r}")
        user = User(
            id=user_id or str(uuid.uuid4()),
            email=email.strip().lower(),
            role=role,
            status=status,
            password_hash=password_hash,
            email_verification_token=email_verification_token,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, role, status, email_verification_token, password_hash, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.role,
                        user.status,
                        user.email_verification_token,
                        user.password_hash,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    # refresh tokens
    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token_family, issued_at, expires_at)
                    SELECT %s, %s, %s, %s, %s
                    WHERE NOT EXISTS (
                        SELECT 1 FROM refresh_token WHERE token_family = %s
                    )
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.token_family,
                        token.issued_at,
                        token.expires_at,
                        token.token_family,
                    ),
                )
                inserted = cur.rowcount
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "token family already issued", {"field": "token_family"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"field": "user_id"})
        if inserted != 1:
            raise ConstraintViolation(
                "token family already issued", {"field": "token_family"}
            )
        return token

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def list_token_family(self, token_family: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE token_family = %s ORDER BY issued_at",
                (token_family,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def rotate_refresh_token(
        self,
        token_id: str,
        *,
        ttl_minutes: int,
        now: Optional[datetime] = None,
    ) -> RotationOutcome:
        """Close ``token_id`` and open its successor in one transaction.

        The presented row is locked with ``FOR UPDATE`` so a concurrent
        rotation of the same id waits, then sees the row already replaced and
        takes the reuse branch.
        """
        now = now or utcnow()
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM refresh_token WHERE id = %s FOR UPDATE",
                    (token_id,),
                ).fetchone()
                if not row:
                    return RotationOutcome(status="not_found")
                presented = self._token_from_row(row)
                if not presented.is_current:
                    revoked = self._revoke_family(conn, presented.token_family, now)
                    return RotationOutcome(
                        status="reused", presented=presented, revoked_count=revoked
                    )
                if presented.is_expired(now):
                    return RotationOutcome(status="expired", presented=presented)
                successor = RefreshToken.new(
                    presented.user_id, presented.token_family, ttl_minutes, now=now
                )
                # The successor FK is deferred, so the old row can point at it first
                conn.execute(
                    "UPDATE refresh_token SET replaced_by_token_id = %s WHERE id = %s",
                    (successor.id, presented.id),
                )
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token_family, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        successor.id,
                        successor.user_id,
                        successor.token_family,
                        successor.issued_at,
                        successor.expires_at,
                    ),
                )
                presented.replaced_by_token_id = successor.id
        return RotationOutcome(status="rotated", presented=presented, successor=successor)

    @staticmethod
    def _revoke_family(conn: psycopg.Connection, token_family: str, now: datetime) -> int:
        cur = conn.execute(
            """
            UPDATE refresh_token SET revoked_at = %s
            WHERE token_family = %s AND revoked_at IS NULL
            """,
            (now, token_family),
        )
        return max(cur.rowcount, 0)

    def revoke_token_family(
        self, token_family: str, *, now: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            return self._revoke_family(conn, token_family, now or utcnow())

    def revoke_user_refresh_tokens(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s
                WHERE user_id = %s AND revoked_at IS NULL
                """,
                (now or utcnow(), user_id),
            )
            return max(cur.rowcount, 0)
