"""
tests/test_database.py
-----------------------
Unit tests for core/database.py and core/connections.py with psycopg2 mocked.
Run with: python -m pytest tests/
"""
from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, call, patch

import psycopg2
import pytest
from psycopg2.extensions import TRANSACTION_STATUS_IDLE, TRANSACTION_STATUS_INERROR

from core.connections import PostgresConnectionProvider
from core.database import ConnectionLostError, DatabaseError, DatabaseManager


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def cursor() -> MagicMock:
    cur = MagicMock()
    cur.description = None
    return cur


@pytest.fixture
def pg_conn(cursor: MagicMock) -> MagicMock:
    conn = MagicMock()
    conn.closed = 0
    conn.get_transaction_status.return_value = TRANSACTION_STATUS_IDLE
    conn.cursor.return_value.__enter__.return_value = cursor
    return conn


@pytest.fixture
def connect(pg_conn: MagicMock):
    with patch("core.database.psycopg2.connect", return_value=pg_conn) as mocked:
        yield mocked


def manager(**kwargs) -> DatabaseManager:
    return DatabaseManager(host="localhost", port=5432, database="app", user="deploy",
                           password="secret", retry_delay=0, **kwargs)


# ---------------------------------------------------------------------------
# DatabaseManager
# ---------------------------------------------------------------------------

class TestDatabaseManager:
    def test_connect_uses_autocommit(self, connect, pg_conn) -> None:
        db = manager()
        db.connect()
        assert db.is_connected
        assert pg_conn.autocommit is True
        assert connect.call_args.kwargs["dbname"] == "app"

    def test_connect_retries_then_fails(self) -> None:
        with patch("core.database.psycopg2.connect", side_effect=psycopg2.OperationalError("refused")) as mocked:
            with pytest.raises(DatabaseError):
                manager(max_retries=2).connect()
        assert mocked.call_count == 2

    def test_execute_sets_statement_timeout(self, connect, cursor) -> None:
        db = manager()
        db.connect()
        db.execute("CREATE TABLE t (id integer)", timeout=2.5)
        assert cursor.execute.call_args_list == [
            call("SET statement_timeout = %s", (2500,)),
            call("CREATE TABLE t (id integer)", None),
        ]

    def test_execute_returns_rows(self, connect, cursor) -> None:
        cursor.description = [("ok",)]
        cursor.fetchall.return_value = [{"ok": 1}]
        db = manager()
        db.connect()
        assert db.execute("SELECT 1 AS ok") == [{"ok": 1}]

    def test_aborted_transaction_skips_timeout(self, connect, pg_conn, cursor) -> None:
        pg_conn.get_transaction_status.return_value = TRANSACTION_STATUS_INERROR
        db = manager()
        db.connect()
        db.execute("ROLLBACK", timeout=5)
        assert cursor.execute.call_args_list == [call("ROLLBACK", None)]

    def test_sql_error_is_wrapped(self, connect, cursor) -> None:
        cursor.execute.side_effect = [None, psycopg2.ProgrammingError("syntax error at or near")]
        db = manager()
        db.connect()
        with pytest.raises(DatabaseError, match="syntax error"):
            db.execute("CREAT TABLE t ()")

    def test_execute_without_connection(self) -> None:
        with pytest.raises(ConnectionLostError):
            manager().execute("SELECT 1")

    def test_context_manager_closes(self, connect, pg_conn) -> None:
        with manager() as db:
            assert db.is_connected
        pg_conn.close.assert_called_once()


# ---------------------------------------------------------------------------
# PostgresConnectionProvider
# ---------------------------------------------------------------------------

class TestPostgresConnectionProvider:
    def test_registry(self) -> None:
        provider = PostgresConnectionProvider()
        conn_id = provider.add_connection("staging", "db", 5432, "app", "deploy", "secret")
        info = provider.get_connection_info(conn_id)
        assert info.has_credentials
        assert "password" not in provider.list_connections()[0]
        assert provider.remove_connection(conn_id)
        assert provider.get_connection_info(conn_id) is None

    def test_execute_round_trip(self, connect, cursor) -> None:
        cursor.description = [("ok",)]
        cursor.fetchall.return_value = [{"ok": 1}]
        provider = PostgresConnectionProvider()
        conn_id = provider.add_connection("staging", "db", 5432, "app", "deploy", "secret")
        result = asyncio.run(provider.execute(conn_id, "SELECT 1 AS ok"))
        assert result.ok
        assert result.rows == [{"ok": 1}]
        assert asyncio.run(provider.is_reachable(conn_id))
        assert connect.call_count == 1
        provider.close_all()

    def test_errors_are_reported_not_raised(self, connect, cursor) -> None:
        cursor.execute.side_effect = [None, psycopg2.errors.lookup("42P07")("relation exists")]
        provider = PostgresConnectionProvider()
        conn_id = provider.add_connection("staging", "db", 5432, "app", "deploy", "secret")
        result = asyncio.run(provider.execute(conn_id, "CREATE TABLE t ()"))
        assert not result.ok
        assert result.error == "relation exists"

    def test_unknown_connection(self) -> None:
        result = asyncio.run(PostgresConnectionProvider().execute("ghost", "SELECT 1"))
        assert result.error == "Connection not found: ghost"

    def test_missing_password_means_no_credentials(self) -> None:
        provider = PostgresConnectionProvider()
        conn_id = provider.add_connection("staging", "db", 5432, "app", "deploy", None)
        assert not provider.get_connection_info(conn_id).has_credentials
