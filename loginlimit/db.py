"""
PostgreSQL persistence for login attempts and bans.

- Connection pooling via psycopg
- Atomic ban upsert through partial unique indexes
- Every driver error surfaces as StorageError
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Generator

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from loginlimit.errors import StorageError
from loginlimit.models import Ban, LoginAttempt

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS loginlimit_attempt (
    id BIGSERIAL PRIMARY KEY,
    ip VARCHAR(64) NOT NULL DEFAULT '',
    username VARCHAR(255) NOT NULL CHECK (username <> ''),
    created_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS loginlimit_attempt_ip_idx
    ON loginlimit_attempt (ip, created_at);
CREATE INDEX IF NOT EXISTS loginlimit_attempt_username_idx
    ON loginlimit_attempt (username, created_at);

CREATE TABLE IF NOT EXISTS loginlimit_ban (
    id BIGSERIAL PRIMARY KEY,
    ip VARCHAR(64),
    username VARCHAR(255),
    updated_at TIMESTAMPTZ NOT NULL,
    CHECK ((ip IS NULL) <> (username IS NULL))
);
CREATE UNIQUE INDEX IF NOT EXISTS loginlimit_ban_ip_key
    ON loginlimit_ban (ip) WHERE ip IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS loginlimit_ban_username_key
    ON loginlimit_ban (username) WHERE username IS NOT NULL;
"""

_UPSERT_BAN_SQL = {
    "ip": """
        INSERT INTO loginlimit_ban (ip, username, updated_at)
        VALUES (%(key)s, NULL, %(now)s)
        ON CONFLICT (ip) WHERE ip IS NOT NULL
        DO UPDATE SET updated_at = EXCLUDED.updated_at
        RETURNING id, ip, username, updated_at, (xmax = 0) AS created
    """,
    "username": """
        INSERT INTO loginlimit_ban (ip, username, updated_at)
        VALUES (NULL, %(key)s, %(now)s)
        ON CONFLICT (username) WHERE username IS NOT NULL
        DO UPDATE SET updated_at = EXCLUDED.updated_at
        RETURNING id, ip, username, updated_at, (xmax = 0) AS created
    """,
}


class Database:
    """Database connection manager."""

    def __init__(self, url: str, min_size: int = 1, max_size: int = 10) -> None:
        self._url = url
        self._min_size = min_size
        self._max_size = max_size
        self._pool: ConnectionPool | None = None

    def _get_pool(self) -> ConnectionPool:
        """Get or create connection pool."""
        if self._pool is None:
            self._pool = ConnectionPool(
                self._url,
                min_size=self._min_size,
                max_size=self._max_size,
                kwargs={"row_factory": dict_row},
                open=True,
            )
        return self._pool

    @contextmanager
    def connection(self) -> Generator[psycopg.Connection, None, None]:
        """Get a connection from the pool; the transaction commits on exit."""
        try:
            pool = self._get_pool()
            with pool.connection() as conn:
                yield conn
        except psycopg.Error as exc:
            logger.exception("Database operation failed")
            raise StorageError(str(exc)) from exc

    def init_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self.connection() as conn:
            conn.execute(SCHEMA_SQL)
        logger.info("Login limit schema ready")

    def test_connection(self) -> bool:
        """Test database connectivity."""
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1")
            return True
        except StorageError:
            return False

    def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            self._pool.close()
            self._pool = None


def _ban_from_row(row: dict[str, Any]) -> Ban:
    return Ban(
        id=row["id"],
        ip=row["ip"],
        username=row["username"],
        updated_at=row["updated_at"],
    )


class PostgresAttemptStore:
    """Attempt log backed by the loginlimit_attempt table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def add(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                INSERT INTO loginlimit_attempt (ip, username, created_at)
                VALUES (%(ip)s, %(username)s, %(created_at)s)
                RETURNING id
                """,
                {
                    "ip": attempt.ip,
                    "username": attempt.username,
                    "created_at": attempt.created_at,
                },
            ).fetchone()
        return attempt.model_copy(update={"id": row["id"]})

    def _count(self, column: str, value: str, since: datetime) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM loginlimit_attempt "
                f"WHERE {column} = %(value)s AND created_at >= %(since)s",
                {"value": value, "since": since},
            ).fetchone()
        return int(row["n"])

    def count_by_ip(self, ip: str, since: datetime) -> int:
        return self._count("ip", ip, since)

    def count_by_username(self, username: str, since: datetime) -> int:
        return self._count("username", username, since)

    def delete_older_than(self, cutoff: datetime) -> int:
        with self._db.connection() as conn:
            cur = conn.execute(
                "DELETE FROM loginlimit_attempt WHERE created_at < %(cutoff)s",
                {"cutoff": cutoff},
            )
            return cur.rowcount


class PostgresBanStore:
    """Ban table backed by loginlimit_ban."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def find_by_either(self, ip: str | None, username: str | None) -> Ban | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, ip, username, updated_at FROM loginlimit_ban
                WHERE (%(ip)s::text IS NOT NULL AND ip = %(ip)s)
                   OR (%(username)s::text IS NOT NULL AND username = %(username)s)
                ORDER BY id
                LIMIT 1
                """,
                {"ip": ip, "username": username},
            ).fetchone()
        return _ban_from_row(row) if row else None

    def add(self, ban: Ban) -> Ban:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                INSERT INTO loginlimit_ban (ip, username, updated_at)
                VALUES (%(ip)s, %(username)s, %(updated_at)s)
                RETURNING id
                """,
                {"ip": ban.ip, "username": ban.username, "updated_at": ban.updated_at},
            ).fetchone()
        return ban.model_copy(update={"id": row["id"]})

    def update(self, ban: Ban) -> Ban:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE loginlimit_ban SET updated_at = %(updated_at)s WHERE id = %(id)s",
                {"id": ban.id, "updated_at": ban.updated_at},
            )
        return ban

    def upsert(self, ip: str | None, username: str | None, now: datetime) -> tuple[Ban, bool]:
        """Insert the ban or refresh updated_at of the existing row, atomically."""
        column = "ip" if ip is not None else "username"
        key = ip if ip is not None else username
        with self._db.connection() as conn:
            row = conn.execute(_UPSERT_BAN_SQL[column], {"key": key, "now": now}).fetchone()
        return _ban_from_row(row), bool(row["created"])

    def delete_older_than(self, cutoff: datetime) -> int:
        with self._db.connection() as conn:
            cur = conn.execute(
                "DELETE FROM loginlimit_ban WHERE updated_at < %(cutoff)s",
                {"cutoff": cutoff},
            )
            return cur.rowcount
