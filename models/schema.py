"""
models/schema.py
----------------
Typed data models for captured schema objects and the differences between
two captured schemas.

Design Decision:
    ``SchemaObject`` and ``Difference`` are frozen dataclasses. A schema
    object is owned by the comparison run that captured it; a difference is
    annotated by returning a modified copy (``dataclasses.replace``), never
    by mutating it in place.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable


class ObjectType(str, Enum):
    """Closed enumeration of the database object kinds the engine handles."""
    TABLE = "table"
    VIEW = "view"
    FUNCTION = "function"
    PROCEDURE = "procedure"
    SEQUENCE = "sequence"
    TYPE = "type"
    DOMAIN = "domain"
    COLLATION = "collation"
    EXTENSION = "extension"
    ROLE = "role"
    TABLESPACE = "tablespace"
    INDEX = "index"
    TRIGGER = "trigger"
    CONSTRAINT = "constraint"

    @property
    def sql_keyword(self) -> str:
        return self.value.upper()

    @property
    def is_global(self) -> bool:
        """Cluster-wide objects are addressed by bare name, not schema.name."""
        return self in (ObjectType.EXTENSION, ObjectType.ROLE, ObjectType.TABLESPACE)


class Operation(str, Enum):
    CREATE = "create"
    ALTER = "alter"
    DROP = "drop"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    @classmethod
    def highest(
        cls, levels: Iterable["RiskLevel"], default: "RiskLevel | None" = None
    ) -> "RiskLevel":
        """Return the most severe level in *levels* (``default`` or LOW when empty)."""
        found = list(levels)
        if not found:
            return default or cls.LOW
        return max(found, key=lambda level: level.rank)


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


def make_key(schema: str, name: str) -> str:
    """Identity key of a schema object: ``"schema.name"``."""
    return f"{schema}.{name}"


@dataclass(frozen=True)
class SchemaObject:
    """
    One named database entity as captured by schema introspection.

    Attributes:
        type:          Kind of object.
        schema:        Owning schema (``public`` for most objects).
        name:          Object name, unique per schema within one capture.
        definition:    SQL text sufficient to recreate the object.
        dependencies:  ``schema.name`` keys of objects that must exist first,
                       in capture order.
    """
    type: ObjectType
    schema: str
    name: str
    definition: str = ""
    dependencies: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return make_key(self.schema, self.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "schema": self.schema,
            "name": self.name,
            "definition": self.definition,
            "dependencies": list(self.dependencies),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "SchemaObject":
        """
        Build a SchemaObject from its JSON form.

        Raises:
            ValueError: If ``type`` is missing or not a known object type.
        """
        try:
            obj_type = ObjectType(str(data.get("type", "")).lower())
        except ValueError as exc:
            raise ValueError(
                f"Unknown object type {data.get('type')!r} for "
                f"{data.get('schema')}.{data.get('name')}"
            ) from exc
        return SchemaObject(
            type=obj_type,
            schema=data.get("schema") or "public",
            name=data["name"],
            definition=data.get("definition") or "",
            dependencies=tuple(data.get("dependencies") or ()),
        )


@dataclass(frozen=True)
class Difference:
    """
    One required change that moves the target schema towards the source.

    Attributes:
        operation:     create / alter / drop.
        object_type:   Kind of the affected object.
        schema, name:  Identity of the affected object.
        sql:           Forward statement(s); empty until annotated.
        rollback_sql:  Inverse statement(s), ``None`` when not derivable.
        risk_level:    Advisory danger classification.
        dependencies:  Object keys this change must run after (creates and
                       alters) or before (drops).
        source:        Desired object (present for create and alter).
        target:        Current object (present for drop and alter).
        warnings:      Notes raised while generating SQL.
    """
    operation: Operation
    object_type: ObjectType
    schema: str
    name: str
    sql: str = ""
    rollback_sql: str | None = None
    risk_level: RiskLevel = RiskLevel.MEDIUM
    dependencies: tuple[str, ...] = ()
    source: SchemaObject | None = field(default=None, repr=False, compare=False)
    target: SchemaObject | None = field(default=None, repr=False, compare=False)
    warnings: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return make_key(self.schema, self.name)

    @property
    def description(self) -> str:
        return f"{self.operation.value} {self.object_type.value} {self.key}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation.value,
            "objectType": self.object_type.value,
            "schema": self.schema,
            "name": self.name,
            "sql": self.sql,
            "rollbackSql": self.rollback_sql,
            "riskLevel": self.risk_level.value,
            "dependencies": list(self.dependencies),
            "warnings": list(self.warnings),
        }
