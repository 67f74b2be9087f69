"""
core/connections.py
-------------------
Connection registry and query transport used by the executor and the
coordinator.

Design Decisions:
    * There is no module-level connection manager. A provider instance is
      created by the caller and passed to the coordinator and executor, so
      tests can substitute any object with the same three methods.
    * Query failures are returned as ``QueryResult.error`` rather than
      raised; the executor decides what a failure means for the run.
    * psycopg2 is blocking, so every call runs in a worker thread via
      ``asyncio.to_thread``. Each registered connection owns one
      :class:`DatabaseManager`, guarded by its own lock so statements for
      one target never interleave.
"""
from __future__ import annotations

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from core.database import DatabaseError, DatabaseManager
from config import CONFIG
from logger import get_logger

log = get_logger(__name__)


@dataclass
class ConnectionInfo:
    """Registered PostgreSQL connection parameters."""
    id: str
    name: str
    host: str
    port: int
    database: str
    username: str
    password: str | None = None
    sslmode: str = "prefer"

    @property
    def has_credentials(self) -> bool:
        return bool(self.username) and self.password is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (without password)."""
        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "username": self.username,
            "sslmode": self.sslmode,
        }


@dataclass
class QueryResult:
    """Rows returned by a statement, or the error it raised."""
    rows: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


class ConnectionProvider(Protocol):
    """What the engine needs from a connection registry."""

    def get_connection_info(self, connection_id: str) -> ConnectionInfo | None:
        ...

    async def execute(
        self, connection_id: str, sql: str, timeout: float | None = None
    ) -> QueryResult:
        ...

    async def is_reachable(self, connection_id: str) -> bool:
        ...


class PostgresConnectionProvider:
    """
    Registry of PostgreSQL connections backed by psycopg2.

    Example::

        provider = PostgresConnectionProvider()
        target = provider.add_connection(
            "staging", host="db.internal", port=5432, database="app",
            username="deploy", password="secret",
        )
        result = asyncio.run(provider.execute(target, "SELECT 1 AS ok"))
        print(result.rows)   # [{'ok': 1}]
    """

    def __init__(self) -> None:
        self._connections: dict[str, ConnectionInfo] = {}
        self._managers: dict[str, DatabaseManager] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def add_connection(
        self,
        name: str,
        host: str,
        port: int,
        database: str,
        username: str,
        password: str | None,
        sslmode: str | None = None,
    ) -> str:
        """
        Register a new connection.

        Returns:
            Connection ID
        """
        conn_id = str(uuid.uuid4())
        self.register(ConnectionInfo(
            id=conn_id,
            name=name,
            host=host,
            port=port,
            database=database,
            username=username,
            password=password,
            sslmode=sslmode or CONFIG.db.sslmode,
        ))
        return conn_id

    def register(self, info: ConnectionInfo) -> None:
        """Register *info* under its own id, replacing any previous entry."""
        with self._registry_lock:
            previous = self._managers.pop(info.id, None)
            self._connections[info.id] = info
            self._locks.setdefault(info.id, threading.Lock())
        if previous is not None:
            previous.close()
        log.info("Added connection: %s (%s@%s:%s/%s)",
                 info.name, info.username, info.host, info.port, info.database)

    def remove_connection(self, connection_id: str) -> bool:
        with self._registry_lock:
            info = self._connections.pop(connection_id, None)
            manager = self._managers.pop(connection_id, None)
            self._locks.pop(connection_id, None)
        if manager is not None:
            manager.close()
        if info is not None:
            log.info("Removed connection: %s", info.name)
        return info is not None

    def list_connections(self) -> list[dict[str, Any]]:
        return [info.to_dict() for info in self._connections.values()]

    def get_connection_info(self, connection_id: str) -> ConnectionInfo | None:
        return self._connections.get(connection_id)

    def close_all(self) -> None:
        with self._registry_lock:
            managers = list(self._managers.values())
            self._managers.clear()
        for manager in managers:
            manager.close()

    # ------------------------------------------------------------------
    # Query transport
    # ------------------------------------------------------------------

    async def execute(
        self, connection_id: str, sql: str, timeout: float | None = None
    ) -> QueryResult:
        """
        Run *sql* on the connection, with a server-side statement timeout.

        Errors are reported in the result, never raised.
        """
        if connection_id not in self._connections:
            return QueryResult(error=f"Connection not found: {connection_id}")
        return await asyncio.to_thread(self._execute_blocking, connection_id, sql, timeout)

    async def is_reachable(self, connection_id: str) -> bool:
        result = await self.execute(connection_id, "SELECT 1 AS ok")
        return result.ok

    def _execute_blocking(self, connection_id: str, sql: str, timeout: float | None) -> QueryResult:
        started = time.perf_counter()
        lock = self._locks.get(connection_id)
        if lock is None:
            return QueryResult(error=f"Connection not found: {connection_id}")
        with lock:
            try:
                manager = self._manager(connection_id)
                rows = manager.execute(sql, timeout=timeout)
            except DatabaseError as exc:
                return QueryResult(error=str(exc), elapsed=time.perf_counter() - started)
        return QueryResult(rows=rows, elapsed=time.perf_counter() - started)

    def _manager(self, connection_id: str) -> DatabaseManager:
        """Return a connected manager for *connection_id*, reconnecting if needed."""
        manager = self._managers.get(connection_id)
        if manager is None:
            info = self._connections[connection_id]
            manager = DatabaseManager(
                host=info.host,
                port=info.port,
                database=info.database,
                user=info.username,
                password=info.password or "",
                sslmode=info.sslmode,
                connect_timeout=CONFIG.db.connect_timeout,
            )
            self._managers[connection_id] = manager
        if not manager.is_connected:
            manager.connect()
        return manager
