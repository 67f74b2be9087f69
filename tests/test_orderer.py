"""
tests/test_orderer.py
----------------------
Unit tests for core/orderer.py.
Run with: python -m pytest tests/
"""
from __future__ import annotations

import pytest

from core.orderer import DependencyGraph, DependencyOrderer
from models.schema import Difference, ObjectType, Operation, SchemaObject

from conftest import ORDERS_DDL, USERS_DDL, table


def diff(operation: Operation, name: str, deps: tuple[str, ...] = (), sql: str = "",
         target: SchemaObject | None = None) -> Difference:
    return Difference(operation, ObjectType.TABLE, "public", name,
                      sql=sql or f"-- {operation.value} {name}", dependencies=deps, target=target)


@pytest.fixture
def orderer() -> DependencyOrderer:
    return DependencyOrderer()


class TestOrder:
    def test_dependency_created_first(self, orderer: DependencyOrderer) -> None:
        ordered = orderer.order([
            diff(Operation.CREATE, "orders", ("public.users",)),
            diff(Operation.CREATE, "users"),
        ])
        assert [d.name for d in ordered] == ["users", "orders"]
        assert orderer.cycles == []

    def test_foreign_key_in_sql_counts(self, orderer: DependencyOrderer) -> None:
        ordered = orderer.order([
            diff(Operation.CREATE, "orders", sql=ORDERS_DDL),
            diff(Operation.CREATE, "users", sql=USERS_DDL),
        ])
        assert [d.name for d in ordered] == ["users", "orders"]

    def test_drops_first_and_dependents_dropped_first(self, orderer: DependencyOrderer) -> None:
        users = table("users", USERS_DDL)
        orders = table("orders", ORDERS_DDL)
        ordered = orderer.order([
            diff(Operation.CREATE, "audit"),
            diff(Operation.DROP, "users", target=users),
            diff(Operation.DROP, "orders", target=orders),
        ])
        assert [(d.operation, d.name) for d in ordered] == [
            (Operation.DROP, "orders"),
            (Operation.DROP, "users"),
            (Operation.CREATE, "audit"),
        ]

    def test_long_dependency_chain(self, orderer: DependencyOrderer) -> None:
        names = [f"t{i}" for i in range(1500)]
        chain = [diff(Operation.CREATE, names[0])] + [
            diff(Operation.CREATE, name, (f"public.{previous}",))
            for previous, name in zip(names, names[1:])
        ]
        ordered = orderer.order(list(reversed(chain)))
        assert [d.name for d in ordered] == names
        assert orderer.cycles == []

    def test_unrelated_keep_input_order(self, orderer: DependencyOrderer) -> None:
        names = ["c", "a", "b"]
        ordered = orderer.order([diff(Operation.CREATE, n) for n in names])
        assert [d.name for d in ordered] == names

    def test_dependency_on_unchanged_object_is_ignored(self, orderer: DependencyOrderer) -> None:
        ordered = orderer.order([diff(Operation.ALTER, "orders", ("public.users",))])
        assert [d.name for d in ordered] == ["orders"]

    def test_every_difference_appears_once(self, orderer: DependencyOrderer) -> None:
        diffs = [
            diff(Operation.CREATE, "a", ("public.b",)),
            diff(Operation.CREATE, "b", ("public.c",)),
            diff(Operation.CREATE, "c"),
            diff(Operation.DROP, "d"),
        ]
        ordered = orderer.order(diffs)
        assert sorted(d.name for d in ordered) == ["a", "b", "c", "d"]

    def test_duplicate_key_in_partition_raises(self, orderer: DependencyOrderer) -> None:
        with pytest.raises(ValueError):
            orderer.order([diff(Operation.CREATE, "a"), diff(Operation.ALTER, "a")])


class TestCycles:
    def test_two_node_cycle_is_broken_deterministically(self, orderer: DependencyOrderer) -> None:
        diffs = [
            diff(Operation.CREATE, "a", ("public.b",)),
            diff(Operation.CREATE, "b", ("public.a",)),
        ]
        first = [d.name for d in orderer.order(diffs)]
        assert first == ["b", "a"]
        assert orderer.cycles == [["public.a", "public.b", "public.a"]]

        second = [d.name for d in DependencyOrderer().order(diffs)]
        assert second == first

    def test_cycles_reset_between_calls(self, orderer: DependencyOrderer) -> None:
        orderer.order([
            diff(Operation.CREATE, "a", ("public.b",)),
            diff(Operation.CREATE, "b", ("public.a",)),
        ])
        orderer.order([diff(Operation.CREATE, "a")])
        assert orderer.cycles == []


class TestDependencyGraph:
    def test_edges_and_transpose(self) -> None:
        graph = DependencyGraph()
        graph.add_edge("public.orders", "public.users")
        graph.add_edge("public.orders", "public.orders")
        assert graph.to_dict() == {"public.orders": ["public.users"], "public.users": []}
        assert graph.transpose().depends_on["public.users"] == ["public.orders"]
