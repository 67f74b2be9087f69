"""models/__init__.py"""
from models.schema import (
    Difference,
    ObjectType,
    Operation,
    RiskLevel,
    SchemaObject,
    make_key,
)
from models.script import MigrationScript, MigrationStep
from models.migration import (
    BackupOptions,
    BackupResult,
    ChangeType,
    Environment,
    MigrationMetadata,
    MigrationOptions,
    MigrationPhase,
    MigrationRequest,
    MigrationResult,
    MigrationStatus,
    RuleResult,
    RuleSeverity,
    ValidationReport,
)

__all__ = [
    "Difference",
    "ObjectType",
    "Operation",
    "RiskLevel",
    "SchemaObject",
    "make_key",
    "MigrationScript",
    "MigrationStep",
    "BackupOptions",
    "BackupResult",
    "ChangeType",
    "Environment",
    "MigrationMetadata",
    "MigrationOptions",
    "MigrationPhase",
    "MigrationRequest",
    "MigrationResult",
    "MigrationStatus",
    "RuleResult",
    "RuleSeverity",
    "ValidationReport",
]
