"""PostgreSQL access via psycopg2.

Provides:
- get_conn(): new connection from a DSN (DATABASE_URL by default)
- txn(): short transaction context manager yielding a cursor
"""

import os
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor

from chatrelay.errors import ConfigurationError


def get_conn(dsn: str | None = None) -> PgConnection:
    """Open a new connection.

    Args:
        dsn: Connection string. Falls back to DATABASE_URL.

    Raises:
        ConfigurationError: If no DSN is available.
        psycopg2.Error: On connection failure.
    """
    dsn = dsn or os.environ.get("DATABASE_URL")
    if not dsn:
        raise ConfigurationError("DATABASE_URL is not configured")
    return psycopg2.connect(dsn)


@contextmanager
def txn(dsn: str | None = None, conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Run a block inside one short transaction.

    A connection is opened (and closed on exit) unless ``conn`` is given.
    Commits on success, rolls back on any exception and re-raises it.

    Example:
        with txn(dsn) as cur:
            cur.execute("UPDATE conversations SET last_at = now() WHERE id = %s", (cid,))
    """
    owns_conn = conn is None
    if conn is None:
        conn = get_conn(dsn)

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
