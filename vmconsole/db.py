"""PostgreSQL connection helpers shared by the billing repositories."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Tuple

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .config import DatabaseConfig

ConnectionFactory = Callable[[], PgConnection]


def create_connection(config: DatabaseConfig) -> PgConnection:
    """Open a new psycopg2 connection using ``config``."""

    return psycopg2.connect(**config.as_connect_kwargs())


def _default_factory() -> PgConnection:
    from .app_context import get_conn

    return get_conn()


@contextmanager
def managed_connection(
    conn: Optional[PgConnection] = None,
    conn_factory: Optional[ConnectionFactory] = None,
) -> Iterator[Tuple[PgConnection, bool]]:
    """Context manager that manages transaction boundaries for optional connections.

    When ``conn`` is supplied the caller owns the transaction; otherwise a
    connection is opened, committed on success, rolled back on error and closed.
    """

    if conn is not None:
        yield conn, False
        return

    connection = (conn_factory or _default_factory)()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


class PostgresRepository:
    """Base class for repositories backed by a psycopg2 connection."""

    def __init__(
        self,
        *,
        conn: Optional[PgConnection] = None,
        conn_factory: Optional[ConnectionFactory] = None,
    ) -> None:
        self._conn = conn
        self._conn_factory = conn_factory

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn, self._conn_factory) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()


__all__ = ["ConnectionFactory", "PostgresRepository", "create_connection", "managed_connection"]
