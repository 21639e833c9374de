"""Connection and cursor helpers shared by the PostgreSQL repositories."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .. import app_context


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None) -> Iterator[Tuple[PgConnection, bool]]:
    """Context manager that manages transaction boundaries for optional connections.

    When ``conn`` is supplied the caller owns the transaction and nothing is
    committed here. Otherwise a fresh connection is opened, committed on
    success, rolled back on error and always closed.
    """

    if conn is not None:
        yield conn, False
        return

    connection = app_context.get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


class PostgresRepository:
    """Base class giving repositories a dict cursor bound to an optional connection."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()


def page_bounds(page: int, limit: int) -> Tuple[int, int]:
    """Clamp pagination input and return ``(offset, limit)``."""

    safe_limit = max(1, min(int(limit), 100))
    safe_page = max(1, int(page))
    return (safe_page - 1) * safe_limit, safe_limit


__all__ = ["PostgresRepository", "managed_connection", "page_bounds"]
