from __future__ import annotations

from typing import Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from lawmakers_auth.logging import get_logger, redact_email
from lawmakers_auth.storage.common import generate_uuid, normalize_email, row_to_user
from lawmakers_auth.storage.errors import ConstraintViolation
from lawmakers_auth.storage.models import User


class PostgresStore:
    """Postgres-backed user store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_users_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_users_table(self) -> None:
        """Create the ``users`` table and its lookup index if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL,
                    email_normalized TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    verified BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS users_created_at_idx ON users (created_at DESC)"
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def create_user(self, email: str, password_hash: str, *, verified: bool = False) -> User:
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, email_normalized, password_hash, verified)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (generate_uuid(), email.strip(), normalized, password_hash, verified),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        self.logger.info("user_created", user_id=str(row["id"]), email=redact_email(normalized))
        return row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email_normalized = %s", (normalize_email(email),)
            ).fetchone()
        if not row:
            return None
        return row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        except errors.InvalidTextRepresentation:
            # not a uuid, so no such user
            return None
        if not row:
            return None
        return row_to_user(row)

    def mark_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET verified = TRUE, updated_at = now() WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row_to_user(row)

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s RETURNING *",
                (password_hash, user_id),
            ).fetchone()
        if not row:
            return None
        return row_to_user(row)

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return result.rowcount > 0
