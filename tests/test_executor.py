"""
tests/test_executor.py
-----------------------
Unit tests for core/executor.py using an in-memory connection provider.
Run with: python -m pytest tests/
"""
from __future__ import annotations

import asyncio

import pytest

from core.executor import ExecutionOptions, MigrationExecutor, StepStatus
from models.script import MigrationScript, MigrationStep

from conftest import FakeConnectionProvider


def step(order: int, sql: str, rollback: str | None = "SELECT 0;", timeout: float | None = None) -> MigrationStep:
    return MigrationStep(order=order, name=f"step {order}", sql=sql, rollback_sql=rollback,
                         timeout_seconds=timeout)


@pytest.fixture
def steps() -> list[MigrationStep]:
    return [
        step(1, "CREATE TABLE public.a (id integer);"),
        step(2, "CREATE TABLE public.b (id integer);"),
        step(3, "CREATE TABLE public.c (id integer);"),
    ]


@pytest.fixture
def executor(provider: FakeConnectionProvider) -> MigrationExecutor:
    return MigrationExecutor(provider)


def run(executor: MigrationExecutor, steps, options: ExecutionOptions | None = None,
        cancel_event: asyncio.Event | None = None):
    return asyncio.run(executor.execute(steps, "target", options, cancel_event))


# ---------------------------------------------------------------------------
# execute
# ---------------------------------------------------------------------------

class TestExecute:
    def test_all_steps_succeed_in_order(self, executor, provider, steps) -> None:
        result = run(executor, list(reversed(steps)))
        assert result.success
        assert result.completed_steps == 3
        assert provider.executed == [s.sql for s in steps]
        assert "[INFO] Executing step 1: step 1" in result.log_lines()

    def test_dry_run_touches_nothing(self, executor, provider, steps) -> None:
        result = run(executor, steps, ExecutionOptions(dry_run=True))
        assert result.success
        assert result.completed_steps == 3
        assert provider.executed == []
        assert any(line.startswith("[INFO] DRY RUN: Would execute step 1") for line in result.log_lines())

    def test_stop_on_error(self, executor, provider, steps) -> None:
        provider.fail_on["public.b"] = "relation already exists"
        result = run(executor, steps)
        assert result.aborted
        assert result.succeeded_orders == [1]
        assert [o.step.order for o in result.failed_steps] == [2]
        assert [o.step.order for o in result.not_attempted] == [3]
        assert result.errors == ["Step 2 failed: relation already exists"]
        assert len(provider.executed) == 2

    def test_continue_on_error(self, executor, provider, steps) -> None:
        provider.fail_on["public.b"] = "boom"
        result = run(executor, steps, ExecutionOptions(stop_on_error=False))
        assert not result.aborted
        assert not result.success
        assert result.succeeded_orders == [1, 3]
        assert result.outcomes[1].status is StepStatus.FAILED

    def test_step_timeout(self, executor, provider, steps) -> None:
        provider.delay_on["public.a"] = 1.0
        result = run(executor, steps, ExecutionOptions(default_timeout=0.05))
        assert result.aborted
        assert result.outcomes[0].error == "Timed out after 0.05s"
        assert provider.executed == []

    def test_step_timeout_overrides_default(self, executor, provider) -> None:
        provider.delay_on["public.a"] = 0.05
        result = run(executor, [step(1, "CREATE TABLE public.a ();", timeout=1.0)],
                     ExecutionOptions(default_timeout=0.01))
        assert result.success

    def test_provider_timeout_without_limit(self, provider, steps) -> None:
        async def timing_out(connection_id, sql, timeout=None):
            raise asyncio.TimeoutError()

        provider.execute = timing_out
        result = run(MigrationExecutor(provider), steps)
        assert result.aborted
        assert result.outcomes[0].error == "Timed out"

    def test_cancel_before_first_step(self, executor, provider, steps) -> None:
        event = asyncio.Event()
        event.set()
        result = run(executor, steps, cancel_event=event)
        assert result.cancelled
        assert result.completed_steps == 0
        assert len(result.not_attempted) == 3
        assert provider.executed == []
        assert "Execution cancelled before step 1" in result.warnings

    def test_advisory_step_is_not_sent(self, executor, provider) -> None:
        result = run(executor, [step(1, "-- MANUAL REVIEW: check this", rollback=None),
                                step(2, "SELECT 1;")])
        assert result.success
        assert result.outcomes[0].advisory
        assert provider.executed == ["SELECT 1;"]
        assert "Step 1 requires manual review and was not executed: step 1" in result.warnings

    def test_unknown_connection_fails_step(self, steps) -> None:
        result = asyncio.run(MigrationExecutor(FakeConnectionProvider()).execute(steps, "missing"))
        assert result.failed_steps[0].error == "Connection not found: missing"


class TestTransactional:
    def test_commit(self, executor, provider, steps) -> None:
        result = run(executor, steps, ExecutionOptions(transactional=True))
        assert result.success
        assert provider.executed[0] == "BEGIN"
        assert provider.executed[-1] == "COMMIT"

    def test_failure_rolls_back(self, executor, provider, steps) -> None:
        provider.fail_on["public.b"] = "boom"
        result = run(executor, steps, ExecutionOptions(transactional=True, stop_on_error=False))
        assert result.aborted
        assert result.transaction_rolled_back
        assert provider.executed[-1] == "ROLLBACK"
        assert "public.c" not in " ".join(provider.executed)

    def test_commit_failure(self, executor, provider, steps) -> None:
        provider.fail_on["COMMIT"] = "serialization failure"
        result = run(executor, steps, ExecutionOptions(transactional=True))
        assert result.aborted
        assert result.transaction_rolled_back
        assert "Transaction commit failed: serialization failure" in result.errors

    def test_dry_run_sends_no_transaction(self, executor, provider, steps) -> None:
        run(executor, steps, ExecutionOptions(transactional=True, dry_run=True))
        assert provider.executed == []


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------

class TestValidate:
    def test_valid_script(self, executor, steps) -> None:
        check = executor.validate(MigrationScript(id="m", steps=tuple(steps)))
        assert check.is_valid
        assert check.errors == []

    def test_empty_script(self, executor) -> None:
        check = executor.validate(MigrationScript(id="m"))
        assert not check.is_valid
        assert check.errors == ["Migration script contains no steps"]

    def test_order_and_empty_sql(self, executor) -> None:
        script = MigrationScript(id="m", steps=(step(2, "SELECT 1;"), step(1, "SELECT 2;"), step(3, "  ")))
        check = executor.validate(script)
        assert "Step 1 (step 1) does not follow step 2" in check.errors
        assert "Step 3 (step 3) has empty SQL" in check.errors

    def test_dangerous_patterns_warn(self, executor) -> None:
        script = MigrationScript(id="m", steps=(
            step(1, "DROP SCHEMA legacy CASCADE;"),
            step(2, "DELETE FROM public.logs;", rollback=None),
            step(3, "DELETE FROM public.logs WHERE id < 10;"),
        ))
        check = executor.validate(script)
        assert check.is_valid
        assert "Step 1 (step 1): contains DROP SCHEMA" in check.warnings
        assert "Step 2 (step 2): contains DELETE without WHERE clause" in check.warnings
        assert "Step 2 (step 2) has no rollback SQL" in check.warnings
        assert not any(w.startswith("Step 3") for w in check.warnings)

    def test_advisory_step_warns(self, executor) -> None:
        check = executor.validate(MigrationScript(id="m", steps=(step(1, "-- MANUAL REVIEW: x"),)))
        assert "Step 1 (step 1) requires manual review" in check.warnings
