"""
core/database.py
----------------
PostgreSQL connection management and statement execution.

Design Decisions:
    * ``DatabaseManager`` is a context manager so callers can use it with
      ``with`` statements and be guaranteed the connection is closed on exit.
    * Connections run in autocommit mode; migration steps control
      transactions explicitly with BEGIN / COMMIT / ROLLBACK statements.
    * Retry logic is implemented for transient connection errors using
      linear back-off (configurable via ``max_retries`` / ``retry_delay``).
    * Rows are returned as dicts (``RealDictCursor``).
"""
from __future__ import annotations

import time
from typing import Any

import psycopg2
from psycopg2.extensions import TRANSACTION_STATUS_INERROR
from psycopg2.extensions import connection as PgConnection
from psycopg2.extras import RealDictCursor

from config import CONFIG
from logger import get_logger

log = get_logger(__name__)


class DatabaseError(Exception):
    """Raised for database-level failures reported by this module."""


class ConnectionLostError(DatabaseError):
    """Raised when the connection to PostgreSQL is detected as lost."""


class DatabaseManager:
    """
    psycopg2 connection wrapper for one PostgreSQL database.

    Provides:
        * Lazy connect / reconnect with retry back-off.
        * Context-manager support (``with DatabaseManager(...) as db``).
        * Per-statement timeouts via ``statement_timeout``.

    Example::

        with DatabaseManager.from_config("app", user="deploy", password="secret") as db:
            rows = db.execute("SELECT 1 AS ok")
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        sslmode: str = "prefer",
        connect_timeout: int = 10,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self._host = host
        self._port = port
        self._database = database
        self._user = user
        self._password = password
        self._sslmode = sslmode
        self._connect_timeout = connect_timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay

        self._conn: PgConnection | None = None

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_config(cls, database: str, user: str, password: str) -> "DatabaseManager":
        """Convenience factory using host/port values from the application config."""
        return cls(
            host=CONFIG.db.host,
            port=CONFIG.db.port,
            database=database,
            user=user,
            password=password,
            sslmode=CONFIG.db.sslmode,
            connect_timeout=CONFIG.db.connect_timeout,
        )

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> "DatabaseManager":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None:
            log.warning("Unhandled exception in DatabaseManager context: %s", exc_val)
            self._safe_rollback()
        self.close()
        return False  # Never suppress exceptions

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """
        Open (or re-open) the connection with back-off retries.

        Raises:
            DatabaseError: If connection fails after all retries.
        """
        for attempt in range(1, self._max_retries + 1):
            try:
                log.info(
                    "Connecting to PostgreSQL at %s:%s/%s (attempt %d/%d)",
                    self._host, self._port, self._database, attempt, self._max_retries,
                )
                self._conn = psycopg2.connect(
                    host=self._host,
                    port=self._port,
                    dbname=self._database,
                    user=self._user,
                    password=self._password,
                    sslmode=self._sslmode,
                    connect_timeout=self._connect_timeout,
                )
                self._conn.autocommit = True
                log.info("Connected to PostgreSQL successfully.")
                return
            except psycopg2.Error as exc:
                log.warning("Connection attempt %d failed: %s", attempt, exc)
                if attempt < self._max_retries:
                    time.sleep(self._retry_delay * attempt)
        raise DatabaseError(
            f"Could not connect to PostgreSQL at {self._host}:{self._port} "
            f"after {self._max_retries} attempts."
        )

    def close(self) -> None:
        """Close the connection, logging any cleanup errors."""
        try:
            if self._conn is not None and not self._conn.closed:
                self._conn.close()
                log.info("Database connection closed.")
        except psycopg2.Error as exc:
            log.debug("Error while closing connection: %s", exc)
        self._conn = None

    @property
    def is_connected(self) -> bool:
        return bool(self._conn is not None and self._conn.closed == 0)

    def _ensure_connected(self) -> None:
        if not self.is_connected:
            raise ConnectionLostError(
                "Database connection is not open. Call connect() first."
            )

    def _safe_rollback(self) -> None:
        try:
            if self.is_connected and self._conn.status != psycopg2.extensions.STATUS_READY:
                self._conn.rollback()
                log.debug("Transaction rolled back.")
        except psycopg2.Error as exc:
            log.warning("Rollback failed: %s", exc)

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    def execute(
        self,
        sql: str,
        params: tuple | None = None,
        timeout: float | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute *sql* and return any result rows.

        Args:
            sql:     One or more statements. Use %s placeholders for values.
            params:  Parameter values (optional).
            timeout: Server-side ``statement_timeout`` in seconds for this call.

        Returns:
            Result rows as dicts; empty for statements without a result set.

        Raises:
            ConnectionLostError: If not connected.
            DatabaseError: On PostgreSQL execution errors.
        """
        self._ensure_connected()
        assert self._conn is not None
        try:
            with self._conn.cursor(cursor_factory=RealDictCursor) as cursor:
                # An aborted transaction accepts nothing but ROLLBACK.
                if self._conn.get_transaction_status() != TRANSACTION_STATUS_INERROR:
                    cursor.execute("SET statement_timeout = %s", (int((timeout or 0) * 1000),))
                cursor.execute(sql, params)
                return [dict(row) for row in cursor.fetchall()] if cursor.description else []
        except psycopg2.OperationalError as exc:
            if self._conn.closed:
                log.error("Connection lost while executing SQL: %s", exc)
                raise ConnectionLostError(str(exc)) from exc
            log.error("SQL execution error: %s | SQL: %.500s", exc, sql)
            raise DatabaseError(str(exc).strip()) from exc
        except psycopg2.Error as exc:
            log.error("SQL execution error: %s | SQL: %.500s", exc, sql)
            raise DatabaseError(str(exc).strip()) from exc

    def ping(self) -> bool:
        """Return True if the server answers ``SELECT 1``."""
        try:
            self.execute("SELECT 1")
            return True
        except DatabaseError:
            return False
