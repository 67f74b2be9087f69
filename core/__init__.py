"""core/__init__.py"""
from core.database import DatabaseManager, DatabaseError, ConnectionLostError
from core.connections import ConnectionInfo, PostgresConnectionProvider, QueryResult
from core.table_parser import parse_table, ParsedTable, TableParseError
from core.type_converter import classify_conversion, ConversionSafety, normalize_type
from core.comparator import SchemaComparator, ComparisonError
from core.sql_generator import SqlGenerator, SqlGenerationError, build_script
from core.orderer import DependencyOrderer, DependencyGraph
from core.executor import MigrationExecutor, ExecutionOptions, ExecutionResult, StepStatus
from core.locks import MigrationLockManager
from core.rules import BusinessRuleEngine, RuleContext
from core.storage import JsonMigrationStore, StorageError
from core.snapshot import SnapshotSchemaProvider, SchemaSnapshotError, load_snapshot, save_snapshot
from core.coordinator import (
    MigrationCoordinator,
    GeneratedMigration,
    MigrationPreconditionError,
    MigrationExecutionError,
    VerificationError,
)

__all__ = [
    "DatabaseManager",
    "DatabaseError",
    "ConnectionLostError",
    "ConnectionInfo",
    "PostgresConnectionProvider",
    "QueryResult",
    "parse_table",
    "ParsedTable",
    "TableParseError",
    "classify_conversion",
    "ConversionSafety",
    "normalize_type",
    "SchemaComparator",
    "ComparisonError",
    "SqlGenerator",
    "SqlGenerationError",
    "build_script",
    "DependencyOrderer",
    "DependencyGraph",
    "MigrationExecutor",
    "ExecutionOptions",
    "ExecutionResult",
    "StepStatus",
    "MigrationLockManager",
    "BusinessRuleEngine",
    "RuleContext",
    "JsonMigrationStore",
    "StorageError",
    "SnapshotSchemaProvider",
    "SchemaSnapshotError",
    "load_snapshot",
    "save_snapshot",
    "MigrationCoordinator",
    "GeneratedMigration",
    "MigrationPreconditionError",
    "MigrationExecutionError",
    "VerificationError",
]
