"""Database access layer using psycopg2.

Provides:
- get_conn(): New connection from DATABASE_URL with connect/statement timeouts
- txn(): Context manager for short, safe transactions
"""

import os
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor

DEFAULT_CONNECT_TIMEOUT = 5
DEFAULT_STATEMENT_TIMEOUT_MS = 5000


def get_conn() -> PgConnection:
    """Get a new database connection from DATABASE_URL.

    Every connection carries a connect timeout (DB_CONNECT_TIMEOUT, seconds)
    and a server-side statement timeout (DB_STATEMENT_TIMEOUT_MS) so a stuck
    query or lock wait cannot hold a request handler indefinitely.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")

    connect_timeout = int(os.environ.get("DB_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT))
    statement_timeout = int(
        os.environ.get("DB_STATEMENT_TIMEOUT_MS", DEFAULT_STATEMENT_TIMEOUT_MS)
    )
    return psycopg2.connect(
        dsn,
        connect_timeout=connect_timeout,
        options=f"-c statement_timeout={statement_timeout}",
    )


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Context manager for a short, safe transaction.

    If conn is None, creates a new connection that is closed on exit.
    Commits on successful exit, rolls back on exception.

    Example:
        with txn() as cur:
            cur.execute("UPDATE bots SET whatsapp_status = %s WHERE id = %s", (s, bot_id))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()
