"""
Database connection and query utilities.

Provides a thin wrapper around a psycopg connection for executing composed
statements, returning rows as dictionaries, and managing explicit
transactions.

The connection is owned by the caller: repositories receive a ``Database``
at construction and never open or close connections themselves. Connections
are expected in autocommit mode so that transactions are always explicit;
``connect()`` and ``get_connection()`` return connections configured that way.
"""

import logging
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any, TypeVar

import psycopg
from psycopg import sql
from psycopg.pq import TransactionStatus
from psycopg.rows import dict_row, tuple_row

from baserepo.config import config

logger = logging.getLogger(__name__)

T = TypeVar("T")

Statement = str | sql.Composable

# =============================================================================
# Connection Management
# =============================================================================


def connect(database_url: str | None = None) -> psycopg.Connection:
    """
    Open a new autocommit connection with dict rows.

    Args:
        database_url: Connection string, defaults to ``config.database_url``

    Returns:
        An open psycopg connection. The caller is responsible for closing it.
    """
    return psycopg.connect(
        database_url or config.database_url,
        autocommit=True,
        row_factory=dict_row,
    )


@contextmanager
def get_connection(database_url: str | None = None) -> Iterator[psycopg.Connection]:
    """
    Context manager for database connections.

    Opens an autocommit connection and closes it when done. Nothing is
    committed or rolled back here: with autocommit every statement outside
    an explicit transaction is already durable.

    Usage:
        with get_connection() as conn:
            repo = PostRepository(Database(conn))
    """
    conn = connect(database_url)
    try:
        yield conn
    finally:
        conn.close()


# =============================================================================
# Database Wrapper
# =============================================================================


class Database:
    """
    Statement execution and transaction control over a single connection.
    """

    def __init__(self, conn: psycopg.Connection):
        self.conn = conn

    def _log(self, query: Statement, params: Any) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            text = query if isinstance(query, str) else query.as_string(self.conn)
            logger.debug("SQL: %s | params: %s", text, params)

    # -------------------------------------------------------------------------
    # Query Helpers
    # -------------------------------------------------------------------------

    def execute(self, query: Statement, params: dict | tuple | None = None) -> int:
        """
        Execute a statement without returning results.

        Use for INSERT, UPDATE, DELETE when you only need the affected rows.

        Returns:
            Number of rows affected
        """
        self._log(query, params)
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return cur.rowcount

    def fetch_one(self, query: Statement, params: dict | tuple | None = None) -> dict[str, Any] | None:
        """
        Execute a query and return a single row as dict.

        Returns:
            Dict of column names to values, or None if no row found
        """
        self._log(query, params)
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            return cur.fetchone()

    def fetch_all(self, query: Statement, params: dict | tuple | None = None) -> list[dict[str, Any]]:
        """
        Execute a query and return all rows as list of dicts.

        Returns:
            List of dicts, empty list if no rows found
        """
        self._log(query, params)
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            return cur.fetchall()

    def fetch_value(self, query: Statement, params: dict | tuple | None = None) -> Any:
        """
        Execute a query and return the first column of the first row.

        Returns:
            The scalar value, or None if no row found
        """
        self._log(query, params)
        with self.conn.cursor(row_factory=tuple_row) as cur:
            cur.execute(query, params)
            row = cur.fetchone()
            return row[0] if row is not None else None

    # -------------------------------------------------------------------------
    # Batch Operations
    # -------------------------------------------------------------------------

    def execute_many(
        self,
        query: Statement,
        params_list: Sequence[dict | tuple],
        page_size: int | None = None,
    ) -> int:
        """
        Execute a statement for many parameter sets, in chunks.

        Args:
            query: Statement with placeholders
            params_list: List of parameter sets
            page_size: Number of parameter sets per executemany() call,
                defaults to ``config.insert_chunk_size``

        Returns:
            Number of rows affected
        """
        page_size = page_size or config.insert_chunk_size
        self._log(query, f"<{len(params_list)} parameter sets>")
        total = 0
        with self.conn.cursor() as cur:
            for i in range(0, len(params_list), page_size):
                chunk = params_list[i : i + page_size]
                cur.executemany(query, chunk)
                total += cur.rowcount
        return total

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def in_transaction(self) -> bool:
        return self.conn.info.transaction_status in (
            TransactionStatus.INTRANS,
            TransactionStatus.INERROR,
        )

    def begin(self) -> bool:
        self._log("BEGIN", None)
        self.conn.execute("BEGIN")
        return self.in_transaction()

    def commit(self) -> None:
        self._log("COMMIT", None)
        self.conn.execute("COMMIT")

    def rollback(self) -> None:
        self._log("ROLLBACK", None)
        self.conn.execute("ROLLBACK")

    def run_in_transaction(self, operation: Callable[[], T]) -> T:
        """
        Run ``operation`` inside a transaction.

        Commits on normal return; on any exception rolls back and re-raises
        it unchanged. Inside an already open transaction psycopg uses a
        savepoint instead.
        """
        with self.conn.transaction():
            return operation()
