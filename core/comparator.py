"""
core/comparator.py
------------------
Computes the differences that turn a target schema into a source schema.

Design Decisions:
    * Objects are keyed by ``schema.name``; source-only objects are created,
      target-only objects are dropped, objects on both sides with unequal
      content are altered, and objects whose type changed are dropped and
      recreated.
    * Content equality is chosen per object type from ``_EQUALITY``, a table
      that covers every :class:`ObjectType` member.
    * Parse failures never propagate: they degrade to normalised-text
      comparison.
"""
from __future__ import annotations

import re
from typing import Callable, Sequence

from core.sql_utils import canonical_sql, normalize_definition
from core.table_parser import ParsedTable, TableParseError, parse_table
from logger import get_logger
from models.schema import Difference, ObjectType, Operation, RiskLevel, SchemaObject

log = get_logger(__name__)


class ComparisonError(ValueError):
    """Raised when an input collection violates the identity invariant."""


# ---------------------------------------------------------------------------
# Per-type equality
# ---------------------------------------------------------------------------

def _text_equal(source: SchemaObject, target: SchemaObject) -> bool:
    return normalize_definition(source.definition) == normalize_definition(target.definition)


def _canonical_equal(source: SchemaObject, target: SchemaObject) -> bool:
    if _text_equal(source, target):
        return True
    return canonical_sql(source.definition) == canonical_sql(target.definition)


def table_signature(table: ParsedTable) -> tuple[frozenset, frozenset]:
    """Order-insensitive structural fingerprint of a parsed table."""
    columns = frozenset(
        (c.name, c.data_type, c.nullable, c.default) for c in table.columns
    )
    constraints = frozenset(
        (c.name or "", c.kind, c.definition) for c in table.constraints
    )
    return columns, constraints


def _table_equal(source: SchemaObject, target: SchemaObject) -> bool:
    if _text_equal(source, target):
        return True
    try:
        source_table = parse_table(source.definition, source.schema)
        target_table = parse_table(target.definition, target.schema)
    except TableParseError as exc:
        log.debug("Table %s compared as text: %s", source.key, exc)
        return False
    return table_signature(source_table) == table_signature(target_table)


_SEQUENCE_OPTION_RES = {
    "as": re.compile(r"\bAS\s+([a-z ]+?)(?=\s+(?:START|INCREMENT|MINVALUE|MAXVALUE|NO|CACHE|CYCLE|OWNED)\b|$)", re.I),
    "start": re.compile(r"\bSTART\s+(?:WITH\s+)?(-?\d+)", re.I),
    "increment": re.compile(r"\bINCREMENT\s+(?:BY\s+)?(-?\d+)", re.I),
    "minvalue": re.compile(r"\bMINVALUE\s+(-?\d+)", re.I),
    "maxvalue": re.compile(r"\bMAXVALUE\s+(-?\d+)", re.I),
    "cache": re.compile(r"\bCACHE\s+(\d+)", re.I),
}
_SEQUENCE_DEFAULTS = {"start": "1", "increment": "1", "cache": "1", "cycle": False}


def parse_sequence_options(definition: str) -> dict[str, object]:
    """
    Extract sequence parameters from a ``CREATE SEQUENCE`` definition.

    Unspecified start, increment, cache and cycle take PostgreSQL's defaults.

    Example::

        parse_sequence_options("CREATE SEQUENCE s START WITH 10 INCREMENT BY 5")
        →  {"start": "10", "increment": "5", "cache": "1", "cycle": False}
    """
    text = normalize_definition(definition)
    options: dict[str, object] = dict(_SEQUENCE_DEFAULTS)
    for option, pattern in _SEQUENCE_OPTION_RES.items():
        match = pattern.search(text)
        if match:
            options[option] = match.group(1).strip()
    options["cycle"] = bool(re.search(r"(?<!no )\bcycle\b", text))
    return options


def _sequence_equal(source: SchemaObject, target: SchemaObject) -> bool:
    if _text_equal(source, target):
        return True
    return parse_sequence_options(source.definition) == parse_sequence_options(target.definition)


_EQUALITY: dict[ObjectType, Callable[[SchemaObject, SchemaObject], bool]] = {
    ObjectType.TABLE: _table_equal,
    ObjectType.VIEW: _canonical_equal,
    ObjectType.FUNCTION: _text_equal,
    ObjectType.PROCEDURE: _text_equal,
    ObjectType.SEQUENCE: _sequence_equal,
    ObjectType.TYPE: _text_equal,
    ObjectType.DOMAIN: _text_equal,
    ObjectType.COLLATION: _text_equal,
    ObjectType.EXTENSION: _text_equal,
    ObjectType.ROLE: _text_equal,
    ObjectType.TABLESPACE: _text_equal,
    ObjectType.INDEX: _canonical_equal,
    ObjectType.TRIGGER: _text_equal,
    ObjectType.CONSTRAINT: _text_equal,
}


def objects_equal(source: SchemaObject, target: SchemaObject) -> bool:
    """Type-aware content equality of two objects of the same type."""
    return _EQUALITY[source.type](source, target)


# ---------------------------------------------------------------------------
# Comparator
# ---------------------------------------------------------------------------

class SchemaComparator:
    """
    Diff two captured schemas.

    Example::

        differences = SchemaComparator().compare(source_objects, target_objects)
        for diff in differences:
            print(diff.description)
    """

    def compare(
        self,
        source: Sequence[SchemaObject],
        target: Sequence[SchemaObject],
    ) -> list[Difference]:
        """
        Return the differences that turn *target* into *source*.

        Creates come first in source order, then drops in target order, then
        alters in source order; callers order them with the dependency
        orderer before execution.

        Raises:
            ComparisonError: If a key appears twice on the same side.
        """
        source_map = self._index(source, "source")
        target_map = self._index(target, "target")

        creates: list[Difference] = []
        drops: list[Difference] = []
        alters: list[Difference] = []

        for key, src in source_map.items():
            tgt = target_map.get(key)
            if tgt is None:
                creates.append(self._create(src))
            elif tgt.type is not src.type:
                log.info(
                    "%s changed type %s → %s; dropping and recreating",
                    key, tgt.type.value, src.type.value,
                )
                drops.append(self._drop(tgt))
                creates.append(self._create(src))
            elif not objects_equal(src, tgt):
                alters.append(self._alter(src, tgt))

        for key, tgt in target_map.items():
            if key not in source_map:
                drops.append(self._drop(tgt))

        differences = creates + drops + alters
        log.info(
            "Compared %d source / %d target object(s): %d create, %d drop, %d alter",
            len(source_map), len(target_map), len(creates), len(drops), len(alters),
        )
        return differences

    @staticmethod
    def _index(objects: Sequence[SchemaObject], side: str) -> dict[str, SchemaObject]:
        index: dict[str, SchemaObject] = {}
        for obj in objects:
            if obj.key in index:
                raise ComparisonError(f"Duplicate {side} object identity: {obj.key}")
            index[obj.key] = obj
        return index

    @staticmethod
    def _create(obj: SchemaObject) -> Difference:
        return Difference(
            operation=Operation.CREATE,
            object_type=obj.type,
            schema=obj.schema,
            name=obj.name,
            risk_level=RiskLevel.LOW,
            dependencies=obj.dependencies,
            source=obj,
        )

    @staticmethod
    def _drop(obj: SchemaObject) -> Difference:
        return Difference(
            operation=Operation.DROP,
            object_type=obj.type,
            schema=obj.schema,
            name=obj.name,
            risk_level=RiskLevel.HIGH,
            dependencies=obj.dependencies,
            target=obj,
        )

    @staticmethod
    def _alter(source: SchemaObject, target: SchemaObject) -> Difference:
        return Difference(
            operation=Operation.ALTER,
            object_type=source.type,
            schema=source.schema,
            name=source.name,
            risk_level=RiskLevel.MEDIUM,
            dependencies=source.dependencies,
            source=source,
            target=target,
        )
