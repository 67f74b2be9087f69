"""
tests/test_comparator.py
-------------------------
Unit tests for core/comparator.py.
Run with: python -m pytest tests/
"""
from __future__ import annotations

import pytest

from core.comparator import (
    _EQUALITY,
    ComparisonError,
    SchemaComparator,
    objects_equal,
    parse_sequence_options,
)
from core.sql_generator import SqlGenerator
from models.schema import ObjectType, Operation, RiskLevel

from conftest import ORDERS_DDL, USERS_DDL, obj, table


@pytest.fixture
def comparator() -> SchemaComparator:
    return SchemaComparator()


class TestCompare:
    def test_identical_schemas_have_no_differences(self, comparator: SchemaComparator) -> None:
        objects = [table("users", USERS_DDL), table("orders", ORDERS_DDL)]
        assert comparator.compare(objects, list(objects)) == []

    def test_source_only_is_create(self, comparator: SchemaComparator) -> None:
        diffs = comparator.compare([table("users", USERS_DDL)], [])
        assert len(diffs) == 1
        assert diffs[0].operation is Operation.CREATE
        assert diffs[0].key == "public.users"
        assert diffs[0].risk_level is RiskLevel.LOW
        assert diffs[0].source is not None and diffs[0].target is None

    def test_target_only_is_drop(self, comparator: SchemaComparator) -> None:
        diffs = comparator.compare([], [table("logs", "CREATE TABLE public.logs (id integer)")])
        assert [(d.operation, d.key) for d in diffs] == [(Operation.DROP, "public.logs")]
        assert diffs[0].risk_level is RiskLevel.HIGH

    def test_changed_definition_is_alter(self, comparator: SchemaComparator) -> None:
        source = [table("users", "CREATE TABLE public.users (id integer, name text)")]
        target = [table("users", "CREATE TABLE public.users (id integer)")]
        diffs = comparator.compare(source, target)
        assert [(d.operation, d.key) for d in diffs] == [(Operation.ALTER, "public.users")]
        assert diffs[0].source is source[0] and diffs[0].target is target[0]

    def test_type_change_is_drop_and_create(self, comparator: SchemaComparator) -> None:
        source = [obj(ObjectType.VIEW, "report", "SELECT 1")]
        target = [table("report", "CREATE TABLE public.report (id integer)")]
        diffs = comparator.compare(source, target)
        assert sorted((d.operation.value, d.object_type.value) for d in diffs) == [
            ("create", "view"), ("drop", "table"),
        ]

    def test_duplicate_identity_raises(self, comparator: SchemaComparator) -> None:
        users = table("users", USERS_DDL)
        with pytest.raises(ComparisonError):
            comparator.compare([users, users], [])

    def test_same_name_in_other_schema_is_distinct(self, comparator: SchemaComparator) -> None:
        source = [table("users", USERS_DDL), table("users", USERS_DDL, schema="audit")]
        diffs = comparator.compare(source, [table("users", USERS_DDL)])
        assert [d.key for d in diffs] == ["audit.users"]

    def test_every_key_is_covered_once(self, comparator: SchemaComparator) -> None:
        source = [table("a", "CREATE TABLE public.a (id integer)"),
                  table("b", "CREATE TABLE public.b (id integer, x text)")]
        target = [table("b", "CREATE TABLE public.b (id integer)"),
                  table("c", "CREATE TABLE public.c (id integer)")]
        diffs = comparator.compare(source, target)
        assert sorted(d.key for d in diffs) == ["public.a", "public.b", "public.c"]

    def test_disjoint_sets_are_all_creates_and_drops(self, comparator: SchemaComparator) -> None:
        source = [table(f"new_{i}", f"CREATE TABLE public.new_{i} (id integer)") for i in range(3)]
        target = [table(f"old_{i}", f"CREATE TABLE public.old_{i} (id integer)") for i in range(2)]
        diffs = comparator.compare(source, target)
        operations = [d.operation for d in diffs]
        assert operations.count(Operation.CREATE) == 3
        assert operations.count(Operation.DROP) == 2
        assert Operation.ALTER not in operations
        assert [d.key for d in diffs] == [
            "public.new_0", "public.new_1", "public.new_2", "public.old_0", "public.old_1",
        ]

    def test_identifier_case_is_folded(self, comparator: SchemaComparator) -> None:
        source = [table("t", "CREATE TABLE public.t (ID integer, Name TEXT)")]
        target = [table("t", "CREATE TABLE public.t (id int4, name text)")]
        assert comparator.compare(source, target) == []

    def test_quoted_identifier_case_is_kept(self, comparator: SchemaComparator) -> None:
        source = [table("t", 'CREATE TABLE public.t ("ID" integer)')]
        target = [table("t", "CREATE TABLE public.t (id int4)")]
        diffs = comparator.compare(source, target)
        assert [d.operation for d in diffs] == [Operation.ALTER]


# ---------------------------------------------------------------------------
# Rollback of generated alters
# ---------------------------------------------------------------------------

class TestAlterRollback:
    """The rollback of an alter is the forward SQL of the opposite comparison."""

    @staticmethod
    def forward_and_reverse(comparator: SchemaComparator, wanted: str, current: str):
        generator = SqlGenerator()
        source, target = [table("t", wanted)], [table("t", current)]
        [forward] = comparator.compare(source, target)
        [reverse] = comparator.compare(target, source)
        return generator.annotate(forward), generator.annotate(reverse)

    def test_add_column(self, comparator: SchemaComparator) -> None:
        forward, reverse = self.forward_and_reverse(
            comparator,
            "CREATE TABLE public.t (id integer, note text)",
            "CREATE TABLE public.t (id integer)",
        )
        assert forward.sql == "ALTER TABLE public.t ADD COLUMN IF NOT EXISTS note text;"
        assert forward.rollback_sql == reverse.sql == "ALTER TABLE public.t DROP COLUMN IF EXISTS note;"

    def test_drop_column(self, comparator: SchemaComparator) -> None:
        forward, reverse = self.forward_and_reverse(
            comparator,
            "CREATE TABLE public.t (id integer)",
            "CREATE TABLE public.t (id integer, note text)",
        )
        assert forward.sql == "ALTER TABLE public.t DROP COLUMN IF EXISTS note;"
        assert forward.rollback_sql == "ALTER TABLE public.t ADD COLUMN note text;"
        assert reverse.rollback_sql == forward.sql

    def test_type_change(self, comparator: SchemaComparator) -> None:
        forward, reverse = self.forward_and_reverse(
            comparator,
            "CREATE TABLE public.t (amount bigint)",
            "CREATE TABLE public.t (amount integer)",
        )
        assert forward.sql == "ALTER TABLE public.t ALTER COLUMN amount TYPE bigint;"
        assert forward.rollback_sql == reverse.sql
        assert reverse.rollback_sql == forward.sql


class TestEquality:
    def test_every_object_type_has_an_equality(self) -> None:
        assert set(_EQUALITY) == set(ObjectType)

    def test_whitespace_and_case_are_ignored(self) -> None:
        a = obj(ObjectType.FUNCTION, "f", "CREATE FUNCTION f() RETURNS int AS $$ SELECT 1 $$ LANGUAGE sql")
        b = obj(ObjectType.FUNCTION, "f", "create function f()  returns int as $$ SELECT 1 $$ language sql;")
        assert objects_equal(a, b)

    def test_table_column_order_is_ignored(self) -> None:
        a = table("t", "CREATE TABLE public.t (id integer, name text)")
        b = table("t", "CREATE TABLE public.t (name text, id integer)")
        assert objects_equal(a, b)

    def test_inline_and_table_level_primary_key_match(self) -> None:
        a = table("t", "CREATE TABLE public.t (id integer PRIMARY KEY, name text)")
        b = table("t", "CREATE TABLE public.t (id integer, name text, PRIMARY KEY (id))")
        assert objects_equal(a, b)

    def test_table_type_alias_is_ignored(self) -> None:
        a = table("t", "CREATE TABLE public.t (id int4, name character varying(20))")
        b = table("t", "CREATE TABLE public.t (id integer, name varchar(20))")
        assert objects_equal(a, b)

    def test_unparseable_tables_compare_as_text(self) -> None:
        a = table("t", "not a table at all")
        b = table("t", "something else entirely")
        assert not objects_equal(a, b)

    def test_sequence_defaults(self) -> None:
        a = obj(ObjectType.SEQUENCE, "s", "CREATE SEQUENCE public.s")
        b = obj(ObjectType.SEQUENCE, "s", "CREATE SEQUENCE public.s START WITH 1 INCREMENT BY 1")
        assert objects_equal(a, b)

    def test_sequence_increment_differs(self) -> None:
        a = obj(ObjectType.SEQUENCE, "s", "CREATE SEQUENCE public.s INCREMENT BY 5")
        b = obj(ObjectType.SEQUENCE, "s", "CREATE SEQUENCE public.s")
        assert not objects_equal(a, b)


class TestSequenceOptions:
    def test_parse(self) -> None:
        options = parse_sequence_options("CREATE SEQUENCE s START WITH 10 INCREMENT BY 5 NO CYCLE")
        assert options["start"] == "10"
        assert options["increment"] == "5"
        assert options["cycle"] is False

    def test_cycle(self) -> None:
        assert parse_sequence_options("CREATE SEQUENCE s CYCLE")["cycle"] is True
