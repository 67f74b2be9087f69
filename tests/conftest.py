"""
tests/conftest.py
-----------------
Shared fakes and object builders for the test suite.
"""
from __future__ import annotations

import asyncio

import pytest

from core.connections import ConnectionInfo, QueryResult
from models.migration import BackupOptions, BackupResult
from models.schema import ObjectType, SchemaObject


# ---------------------------------------------------------------------------
# Object builders
# ---------------------------------------------------------------------------

def table(name: str, definition: str, schema: str = "public", deps: tuple[str, ...] = ()) -> SchemaObject:
    return SchemaObject(ObjectType.TABLE, schema, name, definition, deps)


def obj(type_: ObjectType, name: str, definition: str = "", schema: str = "public",
        deps: tuple[str, ...] = ()) -> SchemaObject:
    return SchemaObject(type_, schema, name, definition, deps)


USERS_DDL = (
    "CREATE TABLE public.users (id integer PRIMARY KEY, "
    "email varchar(255) NOT NULL, created_at timestamp DEFAULT now())"
)
ORDERS_DDL = (
    "CREATE TABLE public.orders (id integer PRIMARY KEY, user_id integer NOT NULL, "
    "CONSTRAINT orders_user_fk FOREIGN KEY (user_id) REFERENCES public.users (id))"
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeConnectionProvider:
    """
    In-memory connection provider.

    ``fail_on`` maps an SQL substring to the error returned for any
    statement containing it; ``delay_on`` maps a substring to seconds slept
    before answering.
    """

    def __init__(self, reachable: bool = True) -> None:
        self.connections: dict[str, ConnectionInfo] = {}
        self.executed: list[str] = []
        self.fail_on: dict[str, str] = {}
        self.delay_on: dict[str, float] = {}
        self.reachable = reachable

    def add(self, connection_id: str, password: str | None = "secret") -> ConnectionInfo:
        info = ConnectionInfo(
            id=connection_id, name=connection_id, host="localhost", port=5432,
            database=connection_id, username="deploy", password=password,
        )
        self.connections[connection_id] = info
        return info

    def get_connection_info(self, connection_id: str) -> ConnectionInfo | None:
        return self.connections.get(connection_id)

    async def execute(self, connection_id: str, sql: str, timeout: float | None = None) -> QueryResult:
        if connection_id not in self.connections:
            return QueryResult(error=f"Connection not found: {connection_id}")
        for marker, seconds in self.delay_on.items():
            if marker in sql:
                await asyncio.sleep(seconds)
        self.executed.append(sql)
        for marker, error in self.fail_on.items():
            if marker in sql:
                return QueryResult(error=error)
        return QueryResult(rows=[])

    async def is_reachable(self, connection_id: str) -> bool:
        return self.reachable and connection_id in self.connections


class FakeBackupService:
    def __init__(self, result: BackupResult | None = None, delay: float = 0.0) -> None:
        self.result = result or BackupResult(success=True, path="/backups/target.dump")
        self.delay = delay
        self.calls: list[tuple[str, BackupOptions]] = []

    async def create_backup(self, connection_id: str, options: BackupOptions) -> BackupResult:
        self.calls.append((connection_id, options))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.result


@pytest.fixture
def provider() -> FakeConnectionProvider:
    fake = FakeConnectionProvider()
    fake.add("source")
    fake.add("target")
    return fake
