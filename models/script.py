"""
models/script.py
----------------
The executable form of an ordered difference list.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from models.schema import ObjectType, Operation, RiskLevel, make_key


@dataclass(frozen=True)
class MigrationStep:
    """One numbered statement group of a migration script."""
    order: int
    name: str
    sql: str
    rollback_sql: str | None = None
    operation: Operation | None = None
    object_type: ObjectType | None = None
    schema: str = ""
    object_name: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    timeout_seconds: float | None = None

    @property
    def key(self) -> str:
        return make_key(self.schema, self.object_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.order,
            "name": self.name,
            "sql": self.sql,
            "rollbackSql": self.rollback_sql,
            "operation": self.operation.value if self.operation else None,
            "objectType": self.object_type.value if self.object_type else None,
            "schema": self.schema,
            "objectName": self.object_name,
            "riskLevel": self.risk_level.value,
            "timeoutSeconds": self.timeout_seconds,
        }


@dataclass(frozen=True)
class MigrationScript:
    """
    Ordered steps for one migration plus their reverse-order rollback.

    Attributes:
        id:         Migration identifier the script was generated for.
        steps:      Steps numbered 1..n in execution order.
        warnings:   Generation and ordering warnings.
        created_at: UTC creation timestamp.
    """
    id: str
    steps: tuple[MigrationStep, ...] = ()
    warnings: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def sql_script(self) -> str:
        return "\n\n".join(step.sql for step in self.steps)

    @property
    def rollback_script(self) -> str | None:
        statements = [s.rollback_sql for s in reversed(self.steps) if s.rollback_sql]
        return "\n\n".join(statements) if statements else None

    @property
    def is_reversible(self) -> bool:
        return all(step.rollback_sql for step in self.steps)

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.highest(step.risk_level for step in self.steps)

    def rollback_steps(self, executed_orders: Iterable[int] | None = None) -> list[MigrationStep]:
        """
        Build rollback steps in reverse-of-execution order.

        Args:
            executed_orders: Orders of the steps that actually ran. ``None``
                             means every step.

        Returns:
            Steps renumbered from 1, one per executed step that carries
            rollback SQL. Steps without rollback SQL are omitted.
        """
        wanted = None if executed_orders is None else set(executed_orders)
        selected = [
            s for s in reversed(self.steps)
            if (wanted is None or s.order in wanted) and s.rollback_sql
        ]
        return [
            MigrationStep(
                order=index,
                name=f"Rollback step {step.order}: {step.name}",
                sql=step.rollback_sql or "",
                operation=step.operation,
                object_type=step.object_type,
                schema=step.schema,
                object_name=step.object_name,
                risk_level=step.risk_level,
                timeout_seconds=step.timeout_seconds,
            )
            for index, step in enumerate(selected, start=1)
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at.isoformat(),
            "riskLevel": self.risk_level.value,
            "steps": [step.to_dict() for step in self.steps],
            "warnings": list(self.warnings),
        }
