"""
core/coordinator.py
-------------------
The migration workflow: validation, optional backup, execution,
verification and cleanup, with rollback on failure.

Phases::

    initializing → validating → [backing-up] → executing → verifying
                 → cleaning-up → completed | failed

Design Decisions:
    * The coordinator is a plain class with injected collaborators
      (connections, schema provider, store, validator, backups, locks and
      the planning components). No global state.
    * Progress is reported via a callback (``progress_cb``) with the
      ``(message, current, total)`` signature, so callers can display
      updates without this module knowing how.
    * Each phase raises on failure; exceptions are caught once at the top
      of :meth:`MigrationCoordinator.execute_migration`, which always
      returns a terminal :class:`MigrationResult` and persists it.
    * The per-target lock is taken after validation, so a run rejected by
      the business rules never blocks another run, and released in
      cleanup whatever the outcome.
    * Rollback replays the rollback SQL of the steps that actually ran, in
      reverse order. A transaction already rolled back by the executor
      counts as a rollback. Verification failures do not roll back.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from functools import partial
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from config import CONFIG
from core.comparator import SchemaComparator
from core.connections import ConnectionProvider
from core.executor import ExecutionOptions, ExecutionResult, MigrationExecutor
from core.locks import MigrationLockManager
from core.orderer import DependencyOrderer
from core.rules import BusinessRuleEngine, RuleContext, ValidationService
from core.snapshot import SchemaProvider
from core.sql_generator import SqlGenerator, build_script
from core.storage import MigrationStore, StorageError
from logger import get_logger, get_migration_logger, level_from_name
from models.migration import (
    BackupOptions,
    BackupResult,
    MigrationMetadata,
    MigrationPhase,
    MigrationRequest,
    MigrationResult,
    MigrationStatus,
    ValidationReport,
)
from models.schema import Difference, RiskLevel
from models.script import MigrationScript

log = get_logger(__name__)

ProgressCallback = Callable[[str, int, int], None]  # message, current, total


class BackupService(Protocol):
    """What the coordinator needs from a backup collaborator."""

    async def create_backup(self, connection_id: str, options: BackupOptions) -> BackupResult:
        ...


class MigrationPreconditionError(Exception):
    """Raised before any mutation: missing connection, failed rules, held lock, failed backup."""


class MigrationExecutionError(Exception):
    """Raised when the migration script fails against the target."""


class VerificationError(Exception):
    """Raised when the post-execution smoke check fails."""


# ---------------------------------------------------------------------------
# Planning result
# ---------------------------------------------------------------------------

@dataclass
class GeneratedMigration:
    """An ordered, annotated plan and the script built from it."""
    migration_id: str
    differences: list[Difference]
    script: MigrationScript
    cycles: list[list[str]] = field(default_factory=list)

    @property
    def sql_script(self) -> str:
        return self.script.sql_script

    @property
    def rollback_script(self) -> str | None:
        return self.script.rollback_script

    @property
    def risk_level(self) -> RiskLevel:
        return self.script.risk_level

    @property
    def warnings(self) -> list[str]:
        return list(self.script.warnings)

    @property
    def operation_count(self) -> int:
        return len(self.script.steps)


@dataclass
class _RunState:
    migration_id: str
    request: MigrationRequest
    dry_run: bool
    metadata: MigrationMetadata
    started: float = field(default_factory=time.perf_counter)
    phase: MigrationPhase = MigrationPhase.INITIALIZING
    plan: GeneratedMigration | None = None
    validation_report: ValidationReport | None = None
    execution: ExecutionResult | None = None
    lock_held: bool = False
    recorded_active: bool = False
    rollback_performed: bool = False
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    execution_log: list[str] = field(default_factory=list)


def generate_migration_id() -> str:
    return f"migration_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class MigrationCoordinator:
    """
    Drives one migration run per :meth:`execute_migration` call.

    Args:
        connections:   Connection registry and query transport.
        schemas:       Schema provider used to capture both sides.
        store:         Persistence for active runs and terminal results.
        validator:     Validation service (defaults to the business rules).
        backups:       Backup service; required only for runs that ask for one.
        locks:         Per-target lock manager.
        step_timeout:  Seconds per step when the request sets none.
        cleanup_grace_seconds: Delay before a finished run leaves the
                       active set; ``0`` removes it immediately.
        progress_cb:   Optional callback ``(message, current, total)``.

    Example::

        coordinator = MigrationCoordinator(provider, SnapshotSchemaProvider("snapshots"),
                                           JsonMigrationStore("migrations.json"))
        result = asyncio.run(coordinator.execute_migration(request))
        print(result.success, result.errors)
    """

    def __init__(
        self,
        connections: ConnectionProvider,
        schemas: SchemaProvider,
        store: MigrationStore,
        validator: ValidationService | None = None,
        backups: BackupService | None = None,
        locks: MigrationLockManager | None = None,
        comparator: SchemaComparator | None = None,
        generator: SqlGenerator | None = None,
        orderer: DependencyOrderer | None = None,
        executor: MigrationExecutor | None = None,
        step_timeout: float | None = None,
        validation_timeout: float | None = None,
        backup_timeout: float | None = None,
        verification_timeout: float | None = None,
        cleanup_grace_seconds: float | None = None,
        progress_cb: ProgressCallback | None = None,
    ) -> None:
        cfg = CONFIG.migration
        self._connections = connections
        self._schemas = schemas
        self._store = store
        self._validator = validator or BusinessRuleEngine()
        self._backups = backups
        self._locks = locks or MigrationLockManager(cfg.lock_timeout_seconds)
        self._comparator = comparator or SchemaComparator()
        self._generator = generator or SqlGenerator()
        self._orderer = orderer or DependencyOrderer()
        self._executor = executor or MigrationExecutor(connections)
        self._step_timeout = step_timeout if step_timeout is not None else cfg.step_timeout_seconds
        self._validation_timeout = validation_timeout or cfg.validation_timeout_seconds
        self._backup_timeout = backup_timeout or cfg.backup_timeout_seconds
        self._verification_timeout = verification_timeout or cfg.verification_timeout_seconds
        self._cleanup_grace = (
            cleanup_grace_seconds if cleanup_grace_seconds is not None else cfg.cleanup_grace_seconds
        )
        self._progress_cb = progress_cb
        self._statuses: dict[str, MigrationMetadata] = {}
        self._cleanup_tasks: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def generate_migration(
        self, request: MigrationRequest, migration_id: str | None = None
    ) -> GeneratedMigration:
        """
        Compare both sides and build the ordered script without executing it.

        Raises:
            Whatever the schema provider or planning components raise.
        """
        migration_id = migration_id or request.id or generate_migration_id()
        options = request.options
        source = await self._schemas.fetch_objects(request.source_connection_id, options.schema_filter)
        target = await self._schemas.fetch_objects(request.target_connection_id, options.schema_filter)

        differences = self._comparator.compare(source, target)
        annotated = self._generator.annotate_all(differences, source, target)
        ordered = self._orderer.order(annotated)
        cycles = [list(cycle) for cycle in self._orderer.cycles]

        script = build_script(
            migration_id,
            ordered,
            step_timeout=options.step_timeout_seconds or self._step_timeout,
            warnings=[f"Dependency cycle broken: {' -> '.join(cycle)}" for cycle in cycles],
        )
        log.info(
            "Generated migration %s: %d step(s), risk %s",
            migration_id, len(script.steps), script.risk_level.value,
        )
        return GeneratedMigration(migration_id, ordered, script, cycles)

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    async def execute_migration(
        self,
        request: MigrationRequest,
        dry_run: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> MigrationResult:
        """
        Run the full workflow for *request*.

        Never raises for workflow failures; the returned result carries
        ``success=False`` and the surfaced error instead.
        """
        migration_id = request.id or generate_migration_id()
        state = _RunState(
            migration_id=migration_id,
            request=request,
            dry_run=dry_run,
            metadata=self._initial_metadata(request),
        )
        self._statuses[migration_id] = state.metadata
        log.info(
            "Starting migration %s: %s → %s%s",
            migration_id, request.source_connection_id, request.target_connection_id,
            " (dry run)" if dry_run else "",
        )

        error: Exception | None = None
        try:
            await self._initialize(state)
            await self._validate(state)
            self._acquire_lock(state)
            if request.options.create_backup_before_execution:
                await self._backup(state)
            await self._execute(state, cancel_event)
            await self._verify(state)
        except Exception as exc:
            error = exc
            await self._handle_failure(state, exc)
        finally:
            self._cleanup(state)

        result = self._build_result(state, error)
        self._persist(result)
        return result

    def _initial_metadata(self, request: MigrationRequest) -> MigrationMetadata:
        options = request.options
        base = request.metadata.model_dump() if request.metadata is not None else {}
        base.update(
            author=options.author or base.get("author"),
            environment=options.environment,
            business_justification=options.business_justification or base.get("business_justification"),
            approved_by=options.approved_by or base.get("approved_by"),
            change_type=options.change_type,
            tags=list(options.tags) or base.get("tags", []),
            status=MigrationStatus.RUNNING,
            current_phase=MigrationPhase.INITIALIZING,
            progress_percentage=0.0,
            started_at=datetime.now(timezone.utc),
        )
        return MigrationMetadata(**base)

    async def _initialize(self, state: _RunState) -> None:
        request = state.request
        self._progress(state, MigrationPhase.INITIALIZING, "Migration workflow started", 0)

        if self._connections.get_connection_info(request.source_connection_id) is None:
            raise MigrationPreconditionError(
                f"Source connection not found: {request.source_connection_id}"
            )
        target = self._connections.get_connection_info(request.target_connection_id)
        if target is None:
            raise MigrationPreconditionError(
                f"Target connection not found: {request.target_connection_id}"
            )
        if not target.has_credentials:
            raise MigrationPreconditionError(
                f"No credentials available for target connection {request.target_connection_id}"
            )

        self._store.add_active_migration(state.migration_id, {
            "migrationId": state.migration_id,
            "sourceConnectionId": request.source_connection_id,
            "targetConnectionId": request.target_connection_id,
            "dryRun": state.dry_run,
            "startedAt": state.metadata.started_at.isoformat(),
        })
        state.recorded_active = True

    async def _validate(self, state: _RunState) -> None:
        request = state.request
        self._progress(state, MigrationPhase.VALIDATING, "Running pre-migration validation", 10)

        state.plan = await self.generate_migration(request, state.migration_id)
        context = RuleContext(
            migration_id=state.migration_id,
            source_connection_id=request.source_connection_id,
            target_connection_id=request.target_connection_id,
            options=request.options,
            metadata=state.metadata,
            differences=list(state.plan.differences),
        )
        try:
            report = await asyncio.wait_for(
                self._validator.evaluate(context), timeout=self._validation_timeout
            )
        except asyncio.TimeoutError:
            raise MigrationPreconditionError(
                f"Pre-migration validation timed out after {self._validation_timeout:g}s"
            ) from None
        state.validation_report = report

        if not report.can_proceed:
            raise MigrationPreconditionError(
                f"Pre-migration validation failed: {', '.join(report.recommendations)}"
            )
        self._progress(
            state, MigrationPhase.VALIDATING,
            f"Validation completed: {report.passed_rules}/{report.total_rules} rules passed", 20,
        )

    def _acquire_lock(self, state: _RunState) -> None:
        target = state.request.target_connection_id
        if not self._locks.try_acquire(target, state.migration_id):
            raise MigrationPreconditionError(
                f"Target connection {target} is locked by migration {self._locks.holder(target)}"
            )
        state.lock_held = True

    async def _backup(self, state: _RunState) -> None:
        if state.dry_run:
            self._note(state, "INFO", "DRY RUN: Would create pre-migration backup")
            return
        if self._backups is None:
            raise MigrationPreconditionError("Backup requested but no backup service is configured")

        self._progress(state, MigrationPhase.BACKING_UP, "Creating pre-migration backup", 30)
        try:
            backup = await asyncio.wait_for(
                self._backups.create_backup(state.request.target_connection_id, BackupOptions()),
                timeout=self._backup_timeout,
            )
        except asyncio.TimeoutError:
            raise MigrationPreconditionError(
                f"Pre-migration backup timed out after {self._backup_timeout:g}s"
            ) from None
        if not backup.success:
            raise MigrationPreconditionError(f"Pre-migration backup failed: {backup.error}")
        self._progress(
            state, MigrationPhase.BACKING_UP, f"Pre-migration backup completed: {backup.path}", 40
        )

    async def _execute(self, state: _RunState, cancel_event: asyncio.Event | None) -> None:
        request = state.request
        options = request.options
        self._progress(state, MigrationPhase.EXECUTING, "Executing migration script", 50)

        plan = await self.generate_migration(request, state.migration_id)
        state.plan = plan
        state.warnings.extend(plan.warnings)
        if not plan.script.steps:
            self._note(state, "INFO", "Schemas are already in sync; nothing to execute")
            return

        check = self._executor.validate(plan.script)
        state.warnings.extend(w for w in check.warnings if w not in state.warnings)
        if not check.is_valid:
            raise MigrationExecutionError(
                f"Migration script validation failed: {'; '.join(check.errors)}"
            )

        execution = await self._executor.execute(
            plan.script.steps,
            request.target_connection_id,
            ExecutionOptions(
                dry_run=state.dry_run,
                stop_on_error=options.stop_on_first_error,
                transactional=options.execute_in_transaction,
                default_timeout=options.step_timeout_seconds or self._step_timeout,
            ),
            cancel_event,
        )
        state.execution = execution
        state.execution_log.extend(execution.log_lines())
        state.warnings.extend(w for w in execution.warnings if w not in state.warnings)

        total = len(plan.script.steps)
        self._progress(
            state, MigrationPhase.EXECUTING,
            f"Executed {execution.completed_steps}/{total} step(s)", 70,
        )

        if execution.cancelled:
            raise MigrationExecutionError(
                f"Migration cancelled after {execution.completed_steps} of {total} step(s)"
            )
        if execution.aborted:
            failed = execution.failed_steps
            if failed:
                step = failed[0]
                raise MigrationExecutionError(
                    f"Step {step.step.order} ({step.step.name}) failed: {step.error}"
                )
            raise MigrationExecutionError("; ".join(execution.errors) or "Execution aborted")
        # Continue-on-error runs finish the workflow but cannot succeed.
        state.errors.extend(execution.errors)

    async def _verify(self, state: _RunState) -> None:
        target = state.request.target_connection_id
        self._progress(state, MigrationPhase.VERIFYING, "Verifying migration completion", 80)
        try:
            reachable = await asyncio.wait_for(
                self._connections.is_reachable(target), timeout=self._verification_timeout
            )
        except asyncio.TimeoutError:
            reachable = False
        if not reachable:
            raise VerificationError("Target connection not accessible after migration")
        self._progress(state, MigrationPhase.VERIFYING, "Migration verification completed", 90)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _handle_failure(self, state: _RunState, exc: Exception) -> None:
        failed_phase = state.phase
        self._note(state, "ERROR", f"{failed_phase.value} failed: {exc}")

        if isinstance(exc, VerificationError):
            return
        if not state.request.options.include_rollback:
            return
        execution = state.execution
        if execution is None or state.dry_run or state.plan is None:
            return

        try:
            await self._rollback(state, execution)
        except Exception as rollback_exc:
            log.error("Rollback of %s failed: %s", state.migration_id, rollback_exc)
            state.warnings.append(f"Rollback failed: {rollback_exc}")

    async def _rollback(self, state: _RunState, execution: ExecutionResult) -> None:
        if execution.transaction_rolled_back:
            state.rollback_performed = True
            self._note(state, "INFO", "Transaction was rolled back; target left unchanged")
            return

        if state.plan is None:
            raise MigrationExecutionError("No migration plan available to roll back")
        steps = state.plan.script.rollback_steps(
            o.step.order for o in execution.outcomes
            if o.step.order in execution.succeeded_orders and not o.advisory
        )
        if not steps:
            self._note(state, "INFO", "No executed step has rollback SQL; nothing to roll back")
            return

        self._note(state, "WARNING", f"Attempting automatic rollback of {len(steps)} step(s)")
        rollback = await self._executor.execute(
            steps,
            state.request.target_connection_id,
            ExecutionOptions(
                stop_on_error=False,
                default_timeout=state.request.options.step_timeout_seconds or self._step_timeout,
            ),
        )
        state.execution_log.extend(rollback.log_lines())
        for outcome in rollback.failed_steps:
            state.warnings.append(f"Rollback failed at {outcome.step.name}: {outcome.error}")
        state.rollback_performed = not rollback.failed_steps
        self._note(
            state,
            "INFO" if state.rollback_performed else "WARNING",
            f"Rollback finished: {rollback.completed_steps}/{len(steps)} step(s) reverted",
        )

    # ------------------------------------------------------------------
    # Cleanup and result
    # ------------------------------------------------------------------

    def _cleanup(self, state: _RunState) -> None:
        self._progress(state, MigrationPhase.CLEANING_UP, "Finalizing migration", 95)
        if state.lock_held:
            self._locks.release(state.request.target_connection_id, state.migration_id)
            state.lock_held = False
        if not state.recorded_active:
            return
        if self._cleanup_grace <= 0:
            self._remove_active(state.migration_id)
        else:
            task = asyncio.get_running_loop().create_task(
                self._remove_active_later(state.migration_id)
            )
            task.add_done_callback(partial(self._cleanup_done, state.migration_id))
            self._cleanup_tasks[state.migration_id] = task

    async def _remove_active_later(self, migration_id: str) -> None:
        await asyncio.sleep(self._cleanup_grace)
        self._remove_active(migration_id)

    def _cleanup_done(self, migration_id: str, task: asyncio.Task) -> None:
        self._cleanup_tasks.pop(migration_id, None)
        # Cancelled by dispose() or by the event loop shutting down.
        if task.cancelled():
            self._remove_active(migration_id)

    def _remove_active(self, migration_id: str) -> None:
        self._statuses.pop(migration_id, None)
        try:
            self._store.remove_active_migration(migration_id)
        except StorageError as exc:
            log.warning("Could not remove active migration %s: %s", migration_id, exc)

    def _build_result(self, state: _RunState, error: Exception | None) -> MigrationResult:
        options = state.request.options
        execution_ms = (time.perf_counter() - state.started) * 1000
        success = error is None and not state.errors

        errors = [str(error)] if error is not None else []
        if state.execution is not None:
            errors.extend(e for e in state.execution.errors if e not in errors)
        errors.extend(e for e in state.errors if e not in errors)

        if success:
            plan = state.plan
            rollback_available = bool(
                options.include_rollback and plan is not None and plan.script.is_reversible
            )
        else:
            rollback_available = state.rollback_performed

        metadata = state.metadata
        metadata.status = MigrationStatus.COMPLETED if success else MigrationStatus.FAILED
        metadata.current_phase = MigrationPhase.COMPLETED if success else MigrationPhase.FAILED
        if success:
            metadata.progress_percentage = 100.0
        metadata.completed_at = datetime.now(timezone.utc)
        metadata.last_updated = metadata.completed_at
        metadata.execution_time_ms = execution_ms

        execution_log = list(state.execution_log)
        if error is not None:
            suffix = " (rollback performed)" if state.rollback_performed else ""
            execution_log.append(f"[ERROR] Migration failed: {error}{suffix}")
        else:
            execution_log.append(
                "[INFO] Migration completed successfully" if success
                else "[WARNING] Migration completed with errors"
            )

        log.info(
            "Migration %s finished: success=%s, %.0fms",
            state.migration_id, success, execution_ms,
        )
        return MigrationResult(
            migration_id=state.migration_id,
            success=success,
            execution_time=execution_ms,
            operations_processed=state.execution.completed_steps if state.execution else 0,
            errors=errors,
            warnings=list(state.warnings),
            rollback_available=rollback_available,
            rollback_performed=state.rollback_performed,
            validation_report=state.validation_report,
            execution_log=execution_log,
            metadata=metadata.model_copy(),
        )

    def _persist(self, result: MigrationResult) -> None:
        try:
            self._store.add_migration_result(result)
        except StorageError as exc:
            log.error("Could not persist result of %s: %s", result.migration_id, exc)

    # ------------------------------------------------------------------
    # Progress reporting
    # ------------------------------------------------------------------

    def _progress(self, state: _RunState, phase: MigrationPhase, message: str, percentage: int) -> None:
        state.phase = phase
        state.metadata.current_phase = phase
        state.metadata.progress_percentage = float(percentage)
        state.metadata.last_updated = datetime.now(timezone.utc)
        self._note(state, "INFO", message)
        if self._progress_cb:
            self._progress_cb(message, percentage, 100)

    @staticmethod
    def _note(state: _RunState, level: str, message: str) -> None:
        state.execution_log.append(f"[{level}] {message}")
        get_migration_logger(__name__, state.migration_id).log(level_from_name(level), message)

    # ------------------------------------------------------------------
    # Status and statistics
    # ------------------------------------------------------------------

    def get_status(self, migration_id: str) -> MigrationMetadata | None:
        """Metadata of a run started by this coordinator, or its stored result."""
        if migration_id in self._statuses:
            return self._statuses[migration_id]
        for result in self._store.get_migration_results():
            if result.migration_id == migration_id:
                return result.metadata
        return None

    def get_stats(self) -> dict[str, Any]:
        active = self._store.get_active_migrations()
        results = self._store.get_migration_results()
        total_time = sum(r.execution_time for r in results)
        return {
            "activeMigrations": len(active),
            "completedMigrations": sum(1 for r in results if r.success),
            "failedMigrations": sum(1 for r in results if not r.success),
            "totalExecutionTime": total_time,
            "averageExecutionTime": total_time / len(results) if results else 0.0,
        }

    async def dispose(self) -> None:
        """Cancel pending cleanups; their active records are removed right away."""
        pending = list(self._cleanup_tasks.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._cleanup_tasks.clear()
        log.info("MigrationCoordinator disposed")
