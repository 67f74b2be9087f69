"""
core/rules.py
-------------
Pre-migration business rules: the reference validation service.

Design Decisions:
    * A rule is plain data (id, name, severity) plus two callables: a
      ``condition`` deciding whether the rule applies to a run and a
      ``check`` producing the verdict. Rules that do not apply are not
      counted.
    * Requests add rules through short expressions
      (``require_backup``, ``max_downtime:600``, ``require_approval:staging``,
      ``no_drop:staging``). An expression that cannot be parsed is reported
      as a failed warning-level rule instead of raising.
    * A rule that raises is recorded as failed with its own severity; the
      exception never escapes :meth:`BusinessRuleEngine.evaluate`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Protocol, Sequence

from logger import get_logger
from models.migration import (
    Environment,
    MigrationMetadata,
    MigrationOptions,
    RuleResult,
    RuleSeverity,
    ValidationReport,
)
from models.schema import Difference, ObjectType, Operation, RiskLevel

log = get_logger(__name__)


@dataclass
class RuleContext:
    """Everything a rule may look at."""
    migration_id: str
    source_connection_id: str
    target_connection_id: str
    options: MigrationOptions
    metadata: MigrationMetadata | None = None
    differences: list[Difference] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def environment(self) -> Environment:
        return self.options.environment

    @property
    def user(self) -> str | None:
        return self.options.author or (self.metadata.author if self.metadata else None)


@dataclass
class RuleVerdict:
    passed: bool
    message: str
    suggestions: list[str] = field(default_factory=list)


@dataclass
class BusinessRule:
    id: str
    name: str
    description: str
    severity: RuleSeverity
    check: Callable[[RuleContext], RuleVerdict]
    condition: Callable[[RuleContext], bool] = lambda context: True
    category: str = "data-safety"


class ValidationService(Protocol):
    """What the coordinator needs from a validation collaborator."""

    async def evaluate(self, context: RuleContext) -> ValidationReport:
        ...


# ---------------------------------------------------------------------------
# Rule factories
# ---------------------------------------------------------------------------

def no_drop_rule(environment: Environment) -> BusinessRule:
    """Reject table drops when migrating into *environment*."""

    def check(context: RuleContext) -> RuleVerdict:
        drops = [
            d.key for d in context.differences
            if d.operation is Operation.DROP and d.object_type is ObjectType.TABLE
        ]
        if not drops:
            return RuleVerdict(True, f"No DROP TABLE operations in {environment.value} migration")
        return RuleVerdict(
            False,
            f"DROP TABLE {', '.join(drops)} is not allowed in the {environment.value} environment",
            [
                "Consider using ALTER TABLE instead of DROP",
                "Create new tables instead of dropping existing ones",
                "Obtain explicit approval for data-destructive operations",
            ],
        )

    return BusinessRule(
        id=f"no_drop_{environment.value}",
        name=f"No DROP Operations in {environment.value.title()}",
        description=f"Prevents DROP TABLE operations when migrating to {environment.value}",
        severity=RuleSeverity.ERROR,
        check=check,
        condition=lambda context: context.environment is environment,
    )


def require_approval_rule(environment: Environment) -> BusinessRule:
    """Require an approver or a business justification for *environment*."""

    def check(context: RuleContext) -> RuleVerdict:
        metadata = context.metadata
        approved = (
            context.options.approved_by
            or context.options.business_justification
            or (metadata and (metadata.approved_by or metadata.business_justification))
        )
        if approved:
            return RuleVerdict(True, f"Migration approved for {environment.value} deployment")
        return RuleVerdict(
            False,
            f"Approval required for {environment.value} migration",
            [
                "Set approvedBy on the migration options",
                "Document the business justification",
            ],
        )

    return BusinessRule(
        id=f"require_approval_{environment.value}",
        name=f"Require Approval for {environment.value.title()} Migrations",
        description=f"Requires explicit approval for migrations to {environment.value}",
        severity=RuleSeverity.ERROR,
        check=check,
        condition=lambda context: context.environment is environment,
        category="governance",
    )


def require_backup_rule() -> BusinessRule:
    def check(context: RuleContext) -> RuleVerdict:
        if context.options.create_backup_before_execution:
            return RuleVerdict(True, "Pre-migration backup is enabled")
        return RuleVerdict(
            False,
            "Pre-migration backup must be enabled",
            ["Enable the createBackupBeforeExecution option"],
        )

    return BusinessRule(
        id="require_backup",
        name="Require Pre-Migration Backup",
        description="Ensures a backup is taken before execution",
        severity=RuleSeverity.ERROR,
        check=check,
    )


def max_downtime_rule(max_seconds: float) -> BusinessRule:
    def check(context: RuleContext) -> RuleVerdict:
        estimate = estimate_migration_time(context.differences)
        if estimate <= max_seconds:
            return RuleVerdict(
                True, f"Estimated duration ({estimate:.0f}s) is within limit ({max_seconds:g}s)"
            )
        return RuleVerdict(
            False,
            f"Estimated duration ({estimate:.0f}s) exceeds limit ({max_seconds:g}s)",
            [
                "Split the migration into smaller batches",
                "Schedule the migration during a maintenance window",
            ],
        )

    return BusinessRule(
        id="max_downtime",
        name=f"Maximum Downtime: {max_seconds:g} seconds",
        description=f"Ensures the migration is expected to finish within {max_seconds:g} seconds",
        severity=RuleSeverity.ERROR,
        check=check,
        category="performance",
    )


def data_loss_warning_rule() -> BusinessRule:
    def check(context: RuleContext) -> RuleVerdict:
        risky = [
            d.description for d in context.differences
            if d.operation is Operation.DROP
            or (d.operation is Operation.ALTER and d.risk_level is RiskLevel.HIGH)
        ]
        if not risky:
            return RuleVerdict(True, "No data-destructive operations detected")
        return RuleVerdict(
            False,
            f"{len(risky)} potentially data-destructive operation(s): {', '.join(risky)}",
            [
                "Review high-risk operations carefully",
                "Ensure a data backup is available",
            ],
        )

    return BusinessRule(
        id="data_loss_warning",
        name="Data Loss Warning",
        description="Warns about drops and high-risk alterations",
        severity=RuleSeverity.WARNING,
        check=check,
    )


# ---------------------------------------------------------------------------
# Duration estimate
# ---------------------------------------------------------------------------

_BASE_SECONDS = {
    Operation.CREATE: 1.0,
    Operation.ALTER: 2.0,
    Operation.DROP: 0.5,
}

_TYPE_SECONDS = {
    (Operation.CREATE, ObjectType.TABLE): 2.0,
    (Operation.CREATE, ObjectType.INDEX): 3.0,
    (Operation.DROP, ObjectType.TABLE): 1.5,
    (Operation.DROP, ObjectType.INDEX): 1.0,
}

_TABLE_ALTER_SECONDS = (
    ("DROP COLUMN", 3.0),
    ("ALTER COLUMN", 2.5),
    ("ADD COLUMN", 1.5),
)


def estimate_migration_time(differences: Sequence[Difference]) -> float:
    """
    Rough duration estimate, in seconds, for applying *differences*.

    Each difference contributes a base cost by operation and object type,
    plus index and constraint maintenance overhead, plus 0.5s of
    transaction overhead; the sum is padded by 20% with a 1s floor.
    """
    total = 0.0
    index_ops = 0
    constraint_ops = 0
    for diff in differences:
        if diff.operation is Operation.ALTER and diff.object_type is ObjectType.TABLE:
            sql = diff.sql.upper()
            total += next((cost for marker, cost in _TABLE_ALTER_SECONDS if marker in sql), 2.0)
        else:
            total += _TYPE_SECONDS.get(
                (diff.operation, diff.object_type), _BASE_SECONDS[diff.operation]
            )
        if diff.object_type is ObjectType.INDEX and diff.operation is not Operation.ALTER:
            index_ops += 1
        elif diff.object_type is ObjectType.TABLE:
            constraint_ops += 1
    total += index_ops * 1.0 + constraint_ops * 1.5 + len(differences) * 0.5
    return max(total * 1.2, 1.0)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class BusinessRuleEngine:
    """
    Evaluate default and request-supplied business rules.

    Example::

        engine = BusinessRuleEngine()
        report = asyncio.run(engine.evaluate(context))
        if not report.can_proceed:
            print(report.recommendations)
    """

    def __init__(self, register_defaults: bool = True) -> None:
        self._rules: dict[str, BusinessRule] = {}
        if register_defaults:
            self.register_rule(no_drop_rule(Environment.PRODUCTION))
            self.register_rule(require_approval_rule(Environment.PRODUCTION))
            self.register_rule(data_loss_warning_rule())

    @property
    def rules(self) -> list[BusinessRule]:
        return list(self._rules.values())

    def register_rule(self, rule: BusinessRule) -> None:
        self._rules[rule.id] = rule
        log.debug("Business rule registered: %s", rule.id)

    def unregister_rule(self, rule_id: str) -> bool:
        removed = self._rules.pop(rule_id, None) is not None
        if removed:
            log.debug("Business rule unregistered: %s", rule_id)
        return removed

    @staticmethod
    def parse_rule_expression(expression: str) -> BusinessRule:
        """
        Build a rule from an expression such as ``max_downtime:600``.

        Raises:
            ValueError: If the expression is unknown or its parameter is invalid.
        """
        rule_type, _, parameter = expression.strip().partition(":")
        rule_type = rule_type.strip().lower()
        parameter = parameter.strip()

        if rule_type == "require_backup":
            return require_backup_rule()
        if rule_type == "data_loss_warning":
            return data_loss_warning_rule()
        if rule_type == "no_drop_production":
            return no_drop_rule(Environment.PRODUCTION)
        if rule_type == "require_approval_production":
            return require_approval_rule(Environment.PRODUCTION)
        if rule_type == "max_downtime":
            try:
                seconds = float(parameter)
            except ValueError:
                raise ValueError(f"max_downtime needs a number of seconds, got {parameter!r}") from None
            if seconds <= 0:
                raise ValueError(f"max_downtime must be positive, got {parameter!r}")
            return max_downtime_rule(seconds)
        if rule_type in ("require_approval", "no_drop"):
            try:
                environment = Environment(parameter.lower())
            except ValueError:
                raise ValueError(f"{rule_type} needs an environment, got {parameter!r}") from None
            factory = require_approval_rule if rule_type == "require_approval" else no_drop_rule
            return factory(environment)
        raise ValueError(f"Unknown business rule type: {rule_type!r}")

    async def evaluate(self, context: RuleContext) -> ValidationReport:
        """Evaluate all applicable rules and aggregate them into a report."""
        rules = dict(self._rules)
        results: list[RuleResult] = []

        for expression in context.options.business_rules:
            try:
                rule = self.parse_rule_expression(expression)
            except ValueError as exc:
                log.warning("Ignoring business rule %r: %s", expression, exc)
                results.append(RuleResult(
                    rule_id=expression,
                    rule_name="Unrecognised rule expression",
                    passed=False,
                    severity=RuleSeverity.WARNING,
                    message=str(exc),
                ))
                continue
            rules[rule.id] = rule

        for rule in rules.values():
            result = self._run_rule(rule, context)
            if result is not None:
                results.append(result)

        return self._report(results, context.options.fail_on_warnings)

    @staticmethod
    def _run_rule(rule: BusinessRule, context: RuleContext) -> RuleResult | None:
        try:
            if not rule.condition(context):
                return None
            verdict = rule.check(context)
        except Exception as exc:
            log.error("Business rule %s failed for %s: %s", rule.id, context.migration_id, exc)
            verdict = RuleVerdict(False, f"Rule evaluation failed: {exc}")
        return RuleResult(
            rule_id=rule.id,
            rule_name=rule.name,
            passed=verdict.passed,
            severity=rule.severity,
            message=verdict.message,
            suggestions=verdict.suggestions if not verdict.passed else [],
        )

    @staticmethod
    def _report(results: list[RuleResult], fail_on_warnings: bool) -> ValidationReport:
        failed = [r for r in results if not r.passed]
        blocking = [
            r for r in failed
            if r.severity is RuleSeverity.ERROR
            or (fail_on_warnings and r.severity is RuleSeverity.WARNING)
        ]
        recommendations: list[str] = []
        for result in failed:
            recommendations.append(result.message)
            recommendations.extend(s for s in result.suggestions if s not in recommendations)
        return ValidationReport(
            can_proceed=not blocking,
            total_rules=len(results),
            passed_rules=len(results) - len(failed),
            failed_rules=sum(1 for r in failed if r.severity is RuleSeverity.ERROR),
            warning_rules=sum(1 for r in failed if r.severity is RuleSeverity.WARNING),
            recommendations=recommendations,
            results=results,
        )
