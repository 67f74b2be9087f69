"""
core/sql_generator.py
---------------------
Forward SQL, rollback SQL and risk level for each schema difference, and
assembly of ordered differences into an executable migration script.

Design Decisions:
    * Statement construction is dispatched per :class:`ObjectType` through
      three tables (create, drop, alter) that each cover every member.
    * ``CASCADE`` is added to a drop only when another captured object
      depends on the dropped one.
    * An alter whose changes cannot all be inverted gets no rollback SQL;
      advisory ``-- MANUAL REVIEW`` comments are emitted for changes that
      cannot be generated safely.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Sequence

from core.comparator import parse_sequence_options
from core.sql_utils import (
    QUALIFIED_PATTERN,
    as_comment,
    qualified_name,
    quote_identifier,
    split_qualified,
    split_top_level,
    terminate,
)
from core.table_parser import (
    ParsedTable,
    TableParseError,
    object_references,
    owning_table,
    parse_table,
)
from core.type_converter import (
    ConversionSafety,
    classify_conversion,
    get_cast_expression,
    needs_using_clause,
)
from logger import get_logger
from models.schema import Difference, ObjectType, Operation, RiskLevel, SchemaObject
from models.script import MigrationScript, MigrationStep

log = get_logger(__name__)

_CREATE_RE = re.compile(r"^\s*CREATE\b", re.IGNORECASE)
_ALTER_TABLE_RE = re.compile(r"^\s*ALTER\s+TABLE\b", re.IGNORECASE)
_SIGNATURE_RE = re.compile(
    rf"\b(?:FUNCTION|PROCEDURE)\s+{QUALIFIED_PATTERN}\s*(\((?:[^()]|\([^()]*\))*\))",
    re.IGNORECASE,
)
_ARG_DEFAULT_RE = re.compile(r"\s+(?:DEFAULT|=)\s+.*$", re.IGNORECASE | re.S)
_OR_REPLACE_RE = re.compile(r"^\s*CREATE\s+(?!OR\s+REPLACE\b)", re.IGNORECASE)

_SEQUENCE_PARAMS = ("as", "start", "increment", "minvalue", "maxvalue", "cache", "cycle")


class SqlGenerationError(ValueError):
    """Raised when a difference lacks what is needed to generate SQL."""


# ---------------------------------------------------------------------------
# Dependency context
# ---------------------------------------------------------------------------

class DependentsIndex:
    """
    Reverse dependency lookup over one side of a comparison.

    Answers "does anything depend on X?" and "is column C of table T the
    target of a foreign key?" for CASCADE decisions.
    """

    def __init__(self, objects: Iterable[SchemaObject] = ()) -> None:
        self._dependents: dict[str, list[str]] = {}
        self._fk_columns: dict[str, set[str]] = {}
        for obj in objects:
            for ref in object_references(obj):
                self._dependents.setdefault(ref, []).append(obj.key)
            if obj.type is ObjectType.TABLE:
                self._index_foreign_keys(obj)

    def _index_foreign_keys(self, obj: SchemaObject) -> None:
        try:
            table = parse_table(obj.definition, obj.schema)
        except TableParseError:
            return
        for constraint in table.constraints:
            if constraint.kind != "foreign key" or not constraint.ref_table:
                continue
            columns = self._fk_columns.setdefault(constraint.ref_table, set())
            columns.update(constraint.ref_columns or ("*",))

    def dependents_of(self, key: str) -> list[str]:
        return list(self._dependents.get(key, ()))

    def has_dependents(self, key: str) -> bool:
        return bool(self._dependents.get(key))

    def is_fk_referenced(self, table_key: str, column: str, pk_columns: Sequence[str] = ()) -> bool:
        columns = self._fk_columns.get(table_key)
        if not columns:
            return False
        return column in columns or ("*" in columns and column in pk_columns)


@dataclass
class _AlterPlan:
    """Accumulates forward statements with their inverses."""
    forward: list[str] = field(default_factory=list)
    inverse: list[str | None] = field(default_factory=list)
    risks: list[RiskLevel] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add(
        self,
        sql: str,
        rollback: str | None,
        risk: RiskLevel,
        warning: str | None = None,
    ) -> None:
        self.forward.append(sql)
        self.inverse.append(rollback)
        self.risks.append(risk)
        if warning:
            self.warnings.append(warning)

    def extend(self, other: "_AlterPlan") -> None:
        self.forward.extend(other.forward)
        self.inverse.extend(other.inverse)
        self.risks.extend(other.risks)
        self.warnings.extend(other.warnings)

    @property
    def sql(self) -> str:
        return "\n".join(self.forward)

    @property
    def rollback_sql(self) -> str | None:
        if not self.inverse or any(step is None for step in self.inverse):
            return None
        return "\n".join(step for step in reversed(self.inverse) if step)

    @property
    def risk(self) -> RiskLevel:
        return RiskLevel.highest(self.risks, default=RiskLevel.MEDIUM)


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class SqlGenerator:
    """
    Annotate differences with SQL, rollback SQL and risk.

    Example::

        generator = SqlGenerator()
        annotated = generator.annotate_all(differences, source_objects, target_objects)
        print(annotated[0].sql)
    """

    def __init__(self) -> None:
        self._create_builders: dict[ObjectType, Callable[[SchemaObject], str]] = {
            ObjectType.TABLE: self._create_from_fragment,
            ObjectType.VIEW: self._create_view,
            ObjectType.FUNCTION: self._create_from_fragment,
            ObjectType.PROCEDURE: self._create_from_fragment,
            ObjectType.SEQUENCE: self._create_optional_fragment,
            ObjectType.TYPE: self._create_from_fragment,
            ObjectType.DOMAIN: self._create_from_fragment,
            ObjectType.COLLATION: self._create_from_fragment,
            ObjectType.EXTENSION: self._create_extension,
            ObjectType.ROLE: self._create_role,
            ObjectType.TABLESPACE: self._create_tablespace,
            ObjectType.INDEX: self._create_from_fragment,
            ObjectType.TRIGGER: self._create_from_fragment,
            ObjectType.CONSTRAINT: self._create_constraint,
        }
        self._drop_builders: dict[ObjectType, Callable[[SchemaObject, bool], str]] = {
            ObjectType.TABLE: self._drop_relation,
            ObjectType.VIEW: self._drop_relation,
            ObjectType.FUNCTION: self._drop_routine,
            ObjectType.PROCEDURE: self._drop_routine,
            ObjectType.SEQUENCE: self._drop_relation,
            ObjectType.TYPE: self._drop_relation,
            ObjectType.DOMAIN: self._drop_relation,
            ObjectType.COLLATION: self._drop_relation,
            ObjectType.EXTENSION: self._drop_global,
            ObjectType.ROLE: self._drop_global,
            ObjectType.TABLESPACE: self._drop_global,
            ObjectType.INDEX: self._drop_relation,
            ObjectType.TRIGGER: self._drop_trigger,
            ObjectType.CONSTRAINT: self._drop_constraint,
        }
        self._alter_builders: dict[
            ObjectType,
            Callable[[SchemaObject, SchemaObject, DependentsIndex, DependentsIndex], _AlterPlan],
        ] = {
            ObjectType.TABLE: self._alter_table,
            ObjectType.VIEW: self._alter_recreate,
            ObjectType.FUNCTION: self._alter_replace,
            ObjectType.PROCEDURE: self._alter_replace,
            ObjectType.SEQUENCE: self._alter_sequence,
            ObjectType.TYPE: self._alter_recreate,
            ObjectType.DOMAIN: self._alter_recreate,
            ObjectType.COLLATION: self._alter_recreate,
            ObjectType.EXTENSION: self._alter_manual,
            ObjectType.ROLE: self._alter_manual,
            ObjectType.TABLESPACE: self._alter_manual,
            ObjectType.INDEX: self._alter_manual,
            ObjectType.TRIGGER: self._alter_recreate,
            ObjectType.CONSTRAINT: self._alter_recreate,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def annotate_all(
        self,
        differences: Sequence[Difference],
        source_objects: Iterable[SchemaObject] = (),
        target_objects: Iterable[SchemaObject] = (),
    ) -> list[Difference]:
        """
        Annotate every difference, using both object sets for CASCADE decisions.

        Args:
            differences:     Output of the comparator.
            source_objects:  Full desired-state object set.
            target_objects:  Full current-state object set.

        Returns:
            New :class:`Difference` instances, in input order.
        """
        source_index = DependentsIndex(source_objects)
        target_index = DependentsIndex(target_objects)
        return [self.annotate(diff, source_index, target_index) for diff in differences]

    def annotate(
        self,
        diff: Difference,
        source_index: DependentsIndex | None = None,
        target_index: DependentsIndex | None = None,
    ) -> Difference:
        """
        Return a copy of *diff* carrying SQL, rollback SQL, risk and dependencies.

        Raises:
            SqlGenerationError: If the objects the operation needs are missing
                                or carry no usable definition.
        """
        source_index = source_index or DependentsIndex()
        target_index = target_index or DependentsIndex()

        if diff.operation is Operation.CREATE:
            obj = self._require(diff.source, diff, "source")
            return replace(
                diff,
                sql=self.create_sql(obj),
                rollback_sql=self.drop_sql(obj, cascade=source_index.has_dependents(obj.key)),
                risk_level=RiskLevel.LOW,
                dependencies=tuple(object_references(obj)),
            )

        if diff.operation is Operation.DROP:
            obj = self._require(diff.target, diff, "target")
            cascade = target_index.has_dependents(obj.key)
            warnings = []
            if obj.type is ObjectType.TABLE:
                warnings.append(f"Dropping table {obj.key} discards its data; rollback recreates it empty")
            if cascade:
                warnings.append(
                    f"{obj.key} is dropped with CASCADE; dependents: "
                    + ", ".join(target_index.dependents_of(obj.key))
                )
            return replace(
                diff,
                sql=self.drop_sql(obj, cascade=cascade),
                rollback_sql=self.create_sql(obj),
                risk_level=RiskLevel.HIGH,
                dependencies=tuple(object_references(obj)),
                warnings=tuple(warnings),
            )

        source = self._require(diff.source, diff, "source")
        target = self._require(diff.target, diff, "target")
        plan = self._alter_builders[source.type](source, target, source_index, target_index)
        return replace(
            diff,
            sql=plan.sql,
            rollback_sql=plan.rollback_sql,
            risk_level=plan.risk,
            dependencies=tuple(object_references(source)),
            warnings=tuple(plan.warnings),
        )

    def create_sql(self, obj: SchemaObject) -> str:
        """Statement that creates *obj* from its captured definition."""
        definition = (obj.definition or "").strip()
        if _CREATE_RE.match(definition):
            return terminate(definition)
        if obj.type is ObjectType.CONSTRAINT and _ALTER_TABLE_RE.match(definition):
            return terminate(definition)
        return self._create_builders[obj.type](obj)

    def drop_sql(self, obj: SchemaObject, cascade: bool = False) -> str:
        """``DROP ... IF EXISTS`` statement for *obj*."""
        return self._drop_builders[obj.type](obj, cascade)

    # ------------------------------------------------------------------
    # Create builders
    # ------------------------------------------------------------------

    @staticmethod
    def _require(obj: SchemaObject | None, diff: Difference, side: str) -> SchemaObject:
        if obj is None:
            raise SqlGenerationError(
                f"{diff.operation.value} difference for {diff.key} has no {side} object"
            )
        return obj

    @staticmethod
    def _definition(obj: SchemaObject) -> str:
        definition = (obj.definition or "").strip().rstrip(";").strip()
        if not definition:
            raise SqlGenerationError(f"No definition captured for {obj.type.value} {obj.key}")
        return definition

    def _create_from_fragment(self, obj: SchemaObject) -> str:
        name = qualified_name(obj.schema, obj.name)
        return terminate(f"CREATE {obj.type.sql_keyword} {name} {self._definition(obj)}")

    @staticmethod
    def _create_optional_fragment(obj: SchemaObject) -> str:
        name = qualified_name(obj.schema, obj.name)
        definition = (obj.definition or "").strip().rstrip(";")
        return terminate(f"CREATE {obj.type.sql_keyword} {name} {definition}".rstrip())

    def _create_view(self, obj: SchemaObject) -> str:
        definition = self._definition(obj)
        if re.match(r"^AS\b", definition, re.IGNORECASE):
            definition = definition[2:].strip()
        return terminate(f"CREATE VIEW {qualified_name(obj.schema, obj.name)} AS {definition}")

    @staticmethod
    def _create_extension(obj: SchemaObject) -> str:
        options = (obj.definition or "").strip().rstrip(";")
        sql = f"CREATE EXTENSION IF NOT EXISTS {quote_identifier(obj.name)}"
        return terminate(f"{sql} {options}" if options else sql)

    @staticmethod
    def _create_role(obj: SchemaObject) -> str:
        options = (obj.definition or "").strip().rstrip(";")
        sql = f"CREATE ROLE {quote_identifier(obj.name)}"
        return terminate(f"{sql} {options}" if options else sql)

    def _create_tablespace(self, obj: SchemaObject) -> str:
        location = self._definition(obj)
        if re.match(r"^LOCATION\b", location, re.IGNORECASE):
            location = location[len("LOCATION"):].strip()
        if not location.startswith("'"):
            location = "'" + location.replace("'", "''") + "'"
        return terminate(f"CREATE TABLESPACE {quote_identifier(obj.name)} LOCATION {location}")

    def _create_constraint(self, obj: SchemaObject) -> str:
        owner = self._owner(obj)
        return terminate(
            f"ALTER TABLE {owner} ADD CONSTRAINT {quote_identifier(obj.name)} {self._definition(obj)}"
        )

    # ------------------------------------------------------------------
    # Drop builders
    # ------------------------------------------------------------------

    @staticmethod
    def _cascade(cascade: bool) -> str:
        return " CASCADE" if cascade else ""

    def _drop_relation(self, obj: SchemaObject, cascade: bool) -> str:
        return (
            f"DROP {obj.type.sql_keyword} IF EXISTS "
            f"{qualified_name(obj.schema, obj.name)}{self._cascade(cascade)};"
        )

    def _drop_routine(self, obj: SchemaObject, cascade: bool) -> str:
        return (
            f"DROP {obj.type.sql_keyword} IF EXISTS {qualified_name(obj.schema, obj.name)}"
            f"{self._routine_signature(obj)}{self._cascade(cascade)};"
        )

    def _drop_global(self, obj: SchemaObject, cascade: bool) -> str:
        # Only extensions accept CASCADE among cluster-wide objects.
        suffix = self._cascade(cascade) if obj.type is ObjectType.EXTENSION else ""
        return f"DROP {obj.type.sql_keyword} IF EXISTS {quote_identifier(obj.name)}{suffix};"

    def _drop_trigger(self, obj: SchemaObject, cascade: bool) -> str:
        return (
            f"DROP TRIGGER IF EXISTS {quote_identifier(obj.name)} "
            f"ON {self._owner(obj)}{self._cascade(cascade)};"
        )

    def _drop_constraint(self, obj: SchemaObject, cascade: bool) -> str:
        return (
            f"ALTER TABLE {self._owner(obj)} DROP CONSTRAINT IF EXISTS "
            f"{quote_identifier(obj.name)}{self._cascade(cascade)};"
        )

    @staticmethod
    def _owner(obj: SchemaObject) -> str:
        owner = owning_table(obj)
        if owner is None:
            raise SqlGenerationError(
                f"Cannot determine the table that owns {obj.type.value} {obj.key}"
            )
        return qualified_name(*split_qualified(owner, obj.schema))

    @staticmethod
    def _routine_signature(obj: SchemaObject) -> str:
        match = _SIGNATURE_RE.search(obj.definition or "")
        if not match:
            return ""
        args = [
            _ARG_DEFAULT_RE.sub("", arg).strip()
            for arg in split_top_level(match.group(1)[1:-1])
        ]
        return "(" + ", ".join(args) + ")"

    # ------------------------------------------------------------------
    # Alter builders
    # ------------------------------------------------------------------

    def _alter_recreate(
        self,
        source: SchemaObject,
        target: SchemaObject,
        source_index: DependentsIndex,
        target_index: DependentsIndex,
    ) -> _AlterPlan:
        plan = _AlterPlan()
        cascade = target_index.has_dependents(target.key)
        forward = f"{self.drop_sql(target, cascade)}\n{self.create_sql(source)}"
        rollback = (
            f"{self.drop_sql(source, source_index.has_dependents(source.key))}\n"
            f"{self.create_sql(target)}"
        )
        risk = RiskLevel.HIGH if source.type in (ObjectType.TYPE, ObjectType.DOMAIN) else RiskLevel.MEDIUM
        warning = None
        if cascade:
            warning = (
                f"{source.key} is recreated with CASCADE; dependents must be recreated: "
                + ", ".join(target_index.dependents_of(target.key))
            )
        plan.add(forward, rollback, risk, warning)
        return plan

    def _alter_replace(
        self,
        source: SchemaObject,
        target: SchemaObject,
        source_index: DependentsIndex,
        target_index: DependentsIndex,
    ) -> _AlterPlan:
        plan = _AlterPlan()
        plan.add(
            _OR_REPLACE_RE.sub("CREATE OR REPLACE ", self.create_sql(source), count=1),
            _OR_REPLACE_RE.sub("CREATE OR REPLACE ", self.create_sql(target), count=1),
            RiskLevel.MEDIUM,
        )
        return plan

    def _alter_sequence(
        self,
        source: SchemaObject,
        target: SchemaObject,
        source_index: DependentsIndex,
        target_index: DependentsIndex,
    ) -> _AlterPlan:
        wanted = parse_sequence_options(source.definition)
        current = parse_sequence_options(target.definition)
        changed = [p for p in _SEQUENCE_PARAMS if wanted.get(p) != current.get(p)]
        if not changed:
            return self._alter_manual(source, target, source_index, target_index)

        name = qualified_name(source.schema, source.name)
        forward = " ".join(_sequence_clause(p, wanted.get(p)) for p in changed)
        backward = " ".join(_sequence_clause(p, current.get(p)) for p in changed)
        plan = _AlterPlan()
        plan.add(f"ALTER SEQUENCE {name} {forward};", f"ALTER SEQUENCE {name} {backward};",
                 RiskLevel.MEDIUM)
        return plan

    @staticmethod
    def _alter_manual(
        source: SchemaObject,
        target: SchemaObject,
        source_index: DependentsIndex,
        target_index: DependentsIndex,
    ) -> _AlterPlan:
        plan = _AlterPlan()
        comment = as_comment(
            f"MANUAL REVIEW: {source.type.value} {source.key} differs between source and "
            f"target; no ALTER is generated automatically.\n"
            f"Source definition: {source.definition}\n"
            f"Target definition: {target.definition}"
        )
        plan.add(comment, None, RiskLevel.MEDIUM,
                 f"{source.type.value} {source.key} requires manual review")
        return plan

    def _alter_table(
        self,
        source: SchemaObject,
        target: SchemaObject,
        source_index: DependentsIndex,
        target_index: DependentsIndex,
    ) -> _AlterPlan:
        try:
            wanted = parse_table(source.definition, source.schema)
            current = parse_table(target.definition, target.schema)
        except TableParseError as exc:
            log.warning("Cannot diff table %s structurally: %s", source.key, exc)
            return self._alter_manual(source, target, source_index, target_index)

        name = qualified_name(source.schema, source.name)
        plan = _AlterPlan()
        plan.extend(self._constraint_removals(name, wanted, current))
        plan.extend(self._column_changes(name, wanted, current, target_index))
        plan.extend(self._constraint_additions(name, wanted, current))
        if not plan.forward:
            return self._alter_manual(source, target, source_index, target_index)
        return plan

    @staticmethod
    def _column_changes(
        name: str,
        wanted: ParsedTable,
        current: ParsedTable,
        target_index: DependentsIndex,
    ) -> _AlterPlan:
        plan = _AlterPlan()
        wanted_cols = {c.name: c for c in wanted.columns}
        current_cols = {c.name: c for c in current.columns}

        # --- Dropped columns (name descending) ---
        for col_name in sorted(set(current_cols) - set(wanted_cols), reverse=True):
            column = current_cols[col_name]
            cascade = target_index.is_fk_referenced(
                current.key, col_name, current.primary_key_columns
            )
            plan.add(
                f"ALTER TABLE {name} DROP COLUMN IF EXISTS "
                f"{quote_identifier(col_name)}{' CASCADE' if cascade else ''};",
                f"ALTER TABLE {name} ADD COLUMN {column.definition()};",
                RiskLevel.HIGH,
                f"Dropping column {name}.{col_name} discards its data; "
                f"rollback restores the column but not its values",
            )

        # --- Added columns ---
        for column in wanted.columns:
            if column.name in current_cols:
                continue
            risk, warning = RiskLevel.LOW, None
            if not column.nullable and column.default is None:
                risk = RiskLevel.MEDIUM
                warning = (
                    f"Column {name}.{column.name} is added as NOT NULL without a "
                    f"default; this fails if the table has rows"
                )
            plan.add(
                f"ALTER TABLE {name} ADD COLUMN IF NOT EXISTS {column.definition()};",
                f"ALTER TABLE {name} DROP COLUMN IF EXISTS {quote_identifier(column.name)};",
                risk,
                warning,
            )

        # --- Modified columns ---
        for column in wanted.columns:
            old = current_cols.get(column.name)
            if old is None:
                continue
            col = quote_identifier(column.name)
            if column.data_type != old.data_type:
                safety = classify_conversion(old.data_type, column.data_type)
                using = ""
                if needs_using_clause(old.data_type, column.data_type):
                    using = f" USING {get_cast_expression(col, column.data_type)}"
                back_using = ""
                if needs_using_clause(column.data_type, old.data_type):
                    back_using = f" USING {get_cast_expression(col, old.data_type)}"
                warning = None
                if safety is not ConversionSafety.SAFE:
                    warning = (
                        f"Changing {name}.{column.name} from {old.data_type} to "
                        f"{column.data_type} is {safety.value}; existing values may be "
                        f"truncated or rejected"
                    )
                plan.add(
                    f"ALTER TABLE {name} ALTER COLUMN {col} TYPE {column.data_type}{using};",
                    f"ALTER TABLE {name} ALTER COLUMN {col} TYPE {old.data_type}{back_using};",
                    RiskLevel.MEDIUM if safety is ConversionSafety.SAFE else RiskLevel.HIGH,
                    warning,
                )
            if column.nullable != old.nullable:
                if column.nullable:
                    plan.add(
                        f"ALTER TABLE {name} ALTER COLUMN {col} DROP NOT NULL;",
                        f"ALTER TABLE {name} ALTER COLUMN {col} SET NOT NULL;",
                        RiskLevel.LOW,
                    )
                else:
                    plan.add(
                        f"ALTER TABLE {name} ALTER COLUMN {col} SET NOT NULL;",
                        f"ALTER TABLE {name} ALTER COLUMN {col} DROP NOT NULL;",
                        RiskLevel.MEDIUM,
                        f"SET NOT NULL on {name}.{column.name} fails if existing rows hold NULL",
                    )
            if column.default != old.default:
                plan.add(
                    _default_clause(name, col, column.default),
                    _default_clause(name, col, old.default),
                    RiskLevel.LOW,
                )
        return plan

    @staticmethod
    def _constraint_removals(name: str, wanted: ParsedTable, current: ParsedTable) -> _AlterPlan:
        plan = _AlterPlan()
        wanted_cons = {c.identity: c for c in wanted.constraints}
        for constraint in current.constraints:
            match = wanted_cons.get(constraint.identity)
            if match is not None and match.definition == constraint.definition:
                continue
            if constraint.name:
                plan.add(
                    f"ALTER TABLE {name} DROP CONSTRAINT IF EXISTS "
                    f"{quote_identifier(constraint.name)};",
                    f"ALTER TABLE {name} ADD CONSTRAINT "
                    f"{quote_identifier(constraint.name)} {constraint.definition};",
                    RiskLevel.MEDIUM,
                )
            else:
                plan.add(
                    as_comment(
                        f"MANUAL REVIEW: unnamed {constraint.kind} constraint "
                        f"`{constraint.definition}` on {name} is absent from the source; "
                        f"look up its name in pg_constraint and drop it."
                    ),
                    None,
                    RiskLevel.MEDIUM,
                    f"Unnamed {constraint.kind} constraint on {name} must be removed manually",
                )
        return plan

    @staticmethod
    def _constraint_additions(name: str, wanted: ParsedTable, current: ParsedTable) -> _AlterPlan:
        plan = _AlterPlan()
        current_cons = {c.identity: c for c in current.constraints}
        for constraint in wanted.constraints:
            match = current_cons.get(constraint.identity)
            if match is not None and match.definition == constraint.definition:
                continue
            if constraint.name:
                plan.add(
                    f"ALTER TABLE {name} ADD CONSTRAINT "
                    f"{quote_identifier(constraint.name)} {constraint.definition};",
                    f"ALTER TABLE {name} DROP CONSTRAINT IF EXISTS "
                    f"{quote_identifier(constraint.name)};",
                    RiskLevel.MEDIUM,
                )
            else:
                plan.add(
                    f"ALTER TABLE {name} ADD {constraint.definition};",
                    None,
                    RiskLevel.MEDIUM,
                    f"Unnamed {constraint.kind} constraint added to {name} has no "
                    f"captured name; it cannot be rolled back automatically",
                )
        return plan


def _default_clause(table: str, column: str, default: str | None) -> str:
    if default is None:
        return f"ALTER TABLE {table} ALTER COLUMN {column} DROP DEFAULT;"
    return f"ALTER TABLE {table} ALTER COLUMN {column} SET DEFAULT {default};"


def _sequence_clause(param: str, value: object) -> str:
    if param == "cycle":
        return "CYCLE" if value else "NO CYCLE"
    if param in ("minvalue", "maxvalue") and value is None:
        return f"NO {param.upper()}"
    if param == "as":
        return f"AS {value}"
    if param == "start":
        return f"START WITH {value}"
    if param == "increment":
        return f"INCREMENT BY {value}"
    return f"{param.upper()} {value}"


# ---------------------------------------------------------------------------
# Script assembly
# ---------------------------------------------------------------------------

def build_script(
    migration_id: str,
    ordered: Sequence[Difference],
    step_timeout: float | None = None,
    warnings: Iterable[str] = (),
) -> MigrationScript:
    """
    Wrap ordered, annotated differences as numbered migration steps.

    Raises:
        SqlGenerationError: If a difference has not been annotated.
    """
    steps = []
    collected = list(warnings)
    for order, diff in enumerate(ordered, start=1):
        if not diff.sql:
            raise SqlGenerationError(f"Difference {diff.description} has no SQL; annotate it first")
        steps.append(MigrationStep(
            order=order,
            name=diff.description,
            sql=diff.sql,
            rollback_sql=diff.rollback_sql,
            operation=diff.operation,
            object_type=diff.object_type,
            schema=diff.schema,
            object_name=diff.name,
            risk_level=diff.risk_level,
            timeout_seconds=step_timeout,
        ))
        collected.extend(diff.warnings)
    return MigrationScript(id=migration_id, steps=tuple(steps), warnings=tuple(collected))
