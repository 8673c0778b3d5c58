from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Iterator, Optional

from psycopg import Connection, OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from hackemon.logging import get_logger
from hackemon.storage.common import generate_uuid, identity_from_row, parse_identity_key
from hackemon.storage.errors import ConstraintViolation, StoreUnavailable
from hackemon.storage.models import Identity

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        legacy_id BIGSERIAL UNIQUE,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        level INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_email_key UNIQUE (email),
        CONSTRAINT app_user_username_key UNIQUE (username)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_digest TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, token_digest)
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
)


class PostgresStore:
    """Postgres-backed credential store.

    Unique constraints on ``app_user`` are the final backstop against
    concurrent registrations; refresh-token rotation relies on the row lock
    taken by ``DELETE`` so only one of two racing rotations sees a deleted row.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable() from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    # identities
    def create_identity(
        self,
        username: str,
        email: str,
        password_hash: str,
        password_algo: str,
        *,
        role: str = "user",
        level: int = 1,
    ) -> Identity:
        user_id = generate_uuid()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, role, level)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, username, role, level),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "username" if "username" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return identity_from_row(row)

    def find_by_email_or_username(self, identifier: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s OR username = %s LIMIT 1",
                (identifier, identifier),
            ).fetchone()
        if not row:
            return None
        return identity_from_row(row)

    def find_by_id(self, identity_id) -> Optional[Identity]:
        key = parse_identity_key(identity_id)
        if key is None:
            return None
        column = "legacy_id" if key.is_legacy else "id"
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {column} = %s", (key.value,)
            ).fetchone()
        if not row:
            return None
        return identity_from_row(row)

    def update_role(self, identity_id: str, role: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, identity_id),
            ).fetchone()
        if not row:
            return None
        return identity_from_row(row)

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (identity_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh tokens
    def add_refresh_token(self, user_id: str, digest: str, expires_at: datetime) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (user_id, token_digest, expires_at)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id, token_digest) DO UPDATE SET expires_at = EXCLUDED.expires_at
                    """,
                    (user_id, digest, expires_at),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for refresh token", {"user_id": user_id}
            ) from exc

    def remove_refresh_token(self, user_id: str, digest: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s AND token_digest = %s",
                (user_id, digest),
            )
            return cur.rowcount > 0

    def has_refresh_token(self, user_id: str, digest: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM refresh_token WHERE user_id = %s AND token_digest = %s",
                (user_id, digest),
            ).fetchone()
        return row is not None

    def rotate_refresh_token(
        self, user_id: str, old_digest: str, new_digest: str, expires_at: datetime
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s AND token_digest = %s",
                (user_id, old_digest),
            )
            if cur.rowcount != 1:
                return False
            conn.execute(
                """
                INSERT INTO refresh_token (user_id, token_digest, expires_at)
                VALUES (%s, %s, %s)
                """,
                (user_id, new_digest, expires_at),
            )
        return True

    def clear_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def prune_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
            return cur.rowcount

    def close(self) -> None:
        self.pool.close()
