"""
Wire-level models for migration requests, results and validation reports.
Serialised with camelCase aliases; construct with either field names or aliases.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Environment(str, Enum):
    """Deployment environment a migration targets."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ChangeType(str, Enum):
    """Nature of the change being shipped."""
    HOTFIX = "hotfix"
    FEATURE = "feature"
    REFACTORING = "refactoring"
    OPTIMIZATION = "optimization"


class MigrationPhase(str, Enum):
    """Coordinator workflow phases, including the two terminal ones."""
    INITIALIZING = "initializing"
    VALIDATING = "validating"
    BACKING_UP = "backing-up"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    CLEANING_UP = "cleaning-up"
    COMPLETED = "completed"
    FAILED = "failed"


class MigrationStatus(str, Enum):
    """Migration run status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RuleSeverity(str, Enum):
    """How a failed business rule affects the run."""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class WireModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ===== Request Models =====

class MigrationOptions(WireModel):
    """Execution options carried by a migration request."""
    change_type: ChangeType = Field(default=ChangeType.FEATURE, alias="type")
    create_backup_before_execution: bool = False
    execute_in_transaction: bool = False
    include_rollback: bool = False
    stop_on_first_error: bool = True
    fail_on_warnings: bool = False
    business_rules: List[str] = Field(default_factory=list)
    schema_filter: Optional[List[str]] = None
    step_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    tags: List[str] = Field(default_factory=list)
    author: Optional[str] = None
    environment: Environment = Environment.DEVELOPMENT
    business_justification: Optional[str] = None
    approved_by: Optional[str] = None


class MigrationMetadata(WireModel):
    """Free-form run metadata; unknown keys are kept."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    author: Optional[str] = None
    environment: Optional[Environment] = None
    business_justification: Optional[str] = None
    approved_by: Optional[str] = None
    change_type: Optional[ChangeType] = None
    tags: List[str] = Field(default_factory=list)
    status: MigrationStatus = MigrationStatus.PENDING
    current_phase: MigrationPhase = MigrationPhase.INITIALIZING
    progress_percentage: float = Field(default=0.0, ge=0, le=100)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    execution_time_ms: Optional[float] = None


class MigrationRequest(WireModel):
    """Request to migrate the target connection's schema to the source's."""
    id: Optional[str] = None
    name: Optional[str] = None
    source_connection_id: str = Field(min_length=1)
    target_connection_id: str = Field(min_length=1)
    options: MigrationOptions = Field(default_factory=MigrationOptions)
    metadata: Optional[MigrationMetadata] = None


# ===== Validation Models =====

class RuleResult(WireModel):
    """Outcome of one business rule evaluation."""
    rule_id: str
    rule_name: str
    passed: bool
    severity: RuleSeverity
    message: str
    suggestions: List[str] = Field(default_factory=list)


class ValidationReport(WireModel):
    """Aggregated outcome of the pre-migration validation phase."""
    can_proceed: bool
    total_rules: int = 0
    passed_rules: int = 0
    failed_rules: int = 0
    warning_rules: int = 0
    recommendations: List[str] = Field(default_factory=list)
    results: List[RuleResult] = Field(default_factory=list)


# ===== Backup Models =====

class BackupOptions(WireModel):
    """Options handed to the backup collaborator."""
    type: str = "full"
    compression: bool = True
    encryption: bool = False
    include_roles: bool = True
    exclude_schemas: List[str] = Field(
        default_factory=lambda: ["information_schema", "pg_catalog", "pg_toast"]
    )


class BackupResult(WireModel):
    """Backup collaborator response."""
    success: bool
    path: Optional[str] = None
    error: Optional[str] = None


# ===== Result Models =====

class MigrationResult(WireModel):
    """Terminal, immutable record of one coordinated migration run."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    migration_id: str
    success: bool
    execution_time: float = Field(ge=0, description="Milliseconds")
    operations_processed: int = 0
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    rollback_available: bool = False
    rollback_performed: bool = False
    validation_report: Optional[ValidationReport] = None
    execution_log: List[str] = Field(default_factory=list)
    metadata: MigrationMetadata = Field(default_factory=MigrationMetadata)
