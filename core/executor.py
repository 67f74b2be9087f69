"""
core/executor.py
----------------
Runs ordered migration steps against one target connection.

Design Decisions:
    * Steps run strictly one after another in ``order``; step N+1 is never
      dispatched before step N's outcome is known.
    * Every step is bounded by ``asyncio.wait_for`` and the same value is
      passed to the connection provider as the server-side statement
      timeout, so a timed-out statement is also cancelled on the server.
    * The cancellation event is only checked between steps; a dispatched
      statement is never interrupted.
    * Everything the run does is written both to the module logger and to
      a structured execution log that ends up in the migration result.
"""
from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Sequence

from core.connections import ConnectionProvider
from core.database import DatabaseError
from core.sql_utils import has_executable_sql, split_statements, strip_comments
from logger import get_logger, level_from_name
from models.script import MigrationScript, MigrationStep

log = get_logger(__name__)

_DROP_DATABASE_RE = re.compile(r"\bDROP\s+DATABASE\b", re.IGNORECASE)
_DROP_SCHEMA_RE = re.compile(r"\bDROP\s+SCHEMA\b", re.IGNORECASE)
_DELETE_RE = re.compile(r"^\s*DELETE\s+FROM\b", re.IGNORECASE)
_WHERE_RE = re.compile(r"\bWHERE\b", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


@dataclass
class ExecutionLogEntry:
    """One line of the structured execution log."""
    level: str
    message: str
    step_order: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __str__(self) -> str:
        return f"[{self.level}] {self.message}"


@dataclass
class ExecutionOptions:
    """
    How a step list is run.

    Attributes:
        dry_run:         Log each step without touching the target.
        stop_on_error:   Abort at the first failed step.
        transactional:   Wrap the run in BEGIN / COMMIT. Always stops at
                         the first failure.
        default_timeout: Seconds allowed per step when the step has none.
    """
    dry_run: bool = False
    stop_on_error: bool = True
    transactional: bool = False
    default_timeout: float | None = None


@dataclass
class StepOutcome:
    step: MigrationStep
    status: StepStatus = StepStatus.PENDING
    error: str | None = None
    elapsed: float = 0.0
    advisory: bool = False


@dataclass
class ExecutionResult:
    """Outcome of one executor run."""
    outcomes: list[StepOutcome] = field(default_factory=list)
    execution_log: list[ExecutionLogEntry] = field(default_factory=list)
    aborted: bool = False
    cancelled: bool = False
    transaction_rolled_back: bool = False

    @property
    def completed_steps(self) -> int:
        return sum(1 for o in self.outcomes if o.status is StepStatus.SUCCEEDED)

    @property
    def succeeded_orders(self) -> list[int]:
        return [o.step.order for o in self.outcomes if o.status is StepStatus.SUCCEEDED]

    @property
    def failed_steps(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if o.status is StepStatus.FAILED]

    @property
    def not_attempted(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if o.status is StepStatus.NOT_ATTEMPTED]

    @property
    def errors(self) -> list[str]:
        return [e.message for e in self.execution_log if e.level == "ERROR"]

    @property
    def warnings(self) -> list[str]:
        return [e.message for e in self.execution_log if e.level == "WARNING"]

    @property
    def success(self) -> bool:
        return not (self.aborted or self.cancelled or self.failed_steps)

    def log_lines(self) -> list[str]:
        return [str(entry) for entry in self.execution_log]


@dataclass
class ScriptValidation:
    """Static check result for a migration script."""
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class MigrationExecutor:
    """
    Execute migration steps through an injected connection provider.

    Args:
        connections: Anything implementing :class:`ConnectionProvider`.

    Example::

        executor = MigrationExecutor(provider)
        result = asyncio.run(executor.execute(script.steps, target_id))
        print(result.completed_steps, result.log_lines())
    """

    def __init__(self, connections: ConnectionProvider) -> None:
        self._connections = connections

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        steps: Sequence[MigrationStep],
        target: str,
        options: ExecutionOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """
        Run *steps* in order against connection *target*.

        Returns:
            An :class:`ExecutionResult`. Step failures are reported in the
            result; this method does not raise for them.
        """
        options = options or ExecutionOptions()
        result = ExecutionResult(
            outcomes=[StepOutcome(step=s) for s in sorted(steps, key=lambda s: s.order)]
        )
        transactional = options.transactional and not options.dry_run
        stop_on_error = options.stop_on_error or transactional

        self._log(result, "INFO", f"Starting execution of {len(result.outcomes)} step(s)"
                  + (" (dry run)" if options.dry_run else ""))

        if transactional:
            error = await self._dispatch(target, "BEGIN", options.default_timeout)
            if error is not None:
                self._log(result, "ERROR", f"Could not start transaction: {error}")
                result.aborted = True
                self._mark_not_attempted(result)
                return result

        for outcome in result.outcomes:
            step = outcome.step
            if cancel_event is not None and cancel_event.is_set():
                self._log(result, "WARNING", f"Execution cancelled before step {step.order}", step.order)
                result.cancelled = True
                break

            outcome.status = StepStatus.RUNNING
            self._log(result, "INFO", f"Executing step {step.order}: {step.name}", step.order)

            if options.dry_run:
                self._log(
                    result, "INFO",
                    f"DRY RUN: Would execute step {step.order} ({len(step.sql)} characters)",
                    step.order,
                )
                outcome.status = StepStatus.SUCCEEDED
                continue

            if not has_executable_sql(step.sql):
                self._log(
                    result, "WARNING",
                    f"Step {step.order} requires manual review and was not executed: {step.name}",
                    step.order,
                )
                outcome.advisory = True
                outcome.status = StepStatus.SUCCEEDED
                continue

            started = time.perf_counter()
            error = await self._dispatch(target, step.sql, step.timeout_seconds or options.default_timeout)
            outcome.elapsed = time.perf_counter() - started

            if error is None:
                outcome.status = StepStatus.SUCCEEDED
                self._log(result, "INFO",
                          f"Step {step.order} completed in {outcome.elapsed:.2f}s", step.order)
                continue

            outcome.status = StepStatus.FAILED
            outcome.error = error
            self._log(result, "ERROR", f"Step {step.order} failed: {error}", step.order)
            if stop_on_error:
                result.aborted = True
                break

        self._mark_not_attempted(result)

        if transactional:
            await self._finish_transaction(result, target, options.default_timeout)

        self._log(
            result, "INFO",
            f"Execution finished: {result.completed_steps}/{len(result.outcomes)} step(s) succeeded",
        )
        return result

    async def _finish_transaction(
        self, result: ExecutionResult, target: str, timeout: float | None
    ) -> None:
        if result.aborted or result.cancelled:
            error = await self._dispatch(target, "ROLLBACK", timeout)
            if error is None:
                result.transaction_rolled_back = True
                self._log(result, "WARNING", "Transaction rolled back")
            else:
                self._log(result, "ERROR", f"Transaction rollback failed: {error}")
            return

        error = await self._dispatch(target, "COMMIT", timeout)
        if error is None:
            self._log(result, "INFO", "Transaction committed")
            return
        # A failed COMMIT ends the transaction with a rollback on the server.
        result.aborted = True
        result.transaction_rolled_back = True
        self._log(result, "ERROR", f"Transaction commit failed: {error}")

    async def _dispatch(self, target: str, sql: str, timeout: float | None) -> str | None:
        """Send *sql*; return the error message, or ``None`` on success."""
        try:
            query = await asyncio.wait_for(
                self._connections.execute(target, sql, timeout=timeout), timeout=timeout
            )
        except asyncio.TimeoutError:
            return f"Timed out after {timeout:g}s" if timeout is not None else "Timed out"
        except DatabaseError as exc:
            return str(exc)
        return query.error

    def _mark_not_attempted(self, result: ExecutionResult) -> None:
        skipped = [o for o in result.outcomes if o.status is StepStatus.PENDING]
        for outcome in skipped:
            outcome.status = StepStatus.NOT_ATTEMPTED
        if skipped:
            self._log(
                result, "WARNING",
                f"{len(skipped)} step(s) not attempted: "
                + ", ".join(str(o.step.order) for o in skipped),
            )

    @staticmethod
    def _log(
        result: ExecutionResult, level: str, message: str, step_order: int | None = None
    ) -> None:
        result.execution_log.append(ExecutionLogEntry(level, message, step_order))
        log.log(level_from_name(level), message)

    # ------------------------------------------------------------------
    # Static validation
    # ------------------------------------------------------------------

    def validate(self, script: MigrationScript) -> ScriptValidation:
        """
        Statically check *script* without contacting any database.

        Errors:   no steps, empty SQL, non-positive or non-increasing order.
        Warnings: missing rollback SQL, advisory-only steps, ``DROP DATABASE``,
                  ``DROP SCHEMA``, and ``DELETE FROM`` without ``WHERE``.
        """
        errors: list[str] = []
        warnings: list[str] = []

        if not script.steps:
            errors.append("Migration script contains no steps")

        previous = 0
        for step in script.steps:
            label = f"Step {step.order} ({step.name})"
            if step.order <= 0:
                errors.append(f"{label} has a non-positive order")
            elif step.order <= previous:
                errors.append(f"{label} does not follow step {previous}")
            previous = max(previous, step.order)

            if not step.sql.strip():
                errors.append(f"{label} has empty SQL")
                continue
            if not step.rollback_sql:
                warnings.append(f"{label} has no rollback SQL")
            if not has_executable_sql(step.sql):
                warnings.append(f"{label} requires manual review")
                continue
            warnings.extend(f"{label}: {w}" for w in _dangerous_patterns(step.sql))

        return ScriptValidation(is_valid=not errors, errors=errors, warnings=warnings)


def _dangerous_patterns(sql: str) -> list[str]:
    found: list[str] = []
    for statement in split_statements(strip_comments(sql)):
        if _DROP_DATABASE_RE.search(statement):
            found.append("contains DROP DATABASE")
        if _DROP_SCHEMA_RE.search(statement):
            found.append("contains DROP SCHEMA")
        if _DELETE_RE.search(statement) and not _WHERE_RE.search(statement):
            found.append("contains DELETE without WHERE clause")
    return found
