"""
main.py
-------
Command line entry point.

Usage::

    schema-sync -v diff snapshots/dev.json snapshots/prod.json --with-rollback
    schema-sync migrate snapshots/dev.json snapshots/prod.json \\
        --host db.internal --database app --user deploy --dry-run

``diff`` prints the ordered migration script that turns the TARGET snapshot
into the SOURCE snapshot. ``migrate`` runs the full workflow against a live
PostgreSQL database whose current schema is described by TARGET; the
password is read from ``PGPASSWORD``.

Exit code is 0 on success and 1 on failure.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from config import CONFIG
from core.comparator import ComparisonError
from core.connections import ConnectionInfo, PostgresConnectionProvider
from core.coordinator import GeneratedMigration, MigrationCoordinator
from core.snapshot import SchemaSnapshotError, SnapshotSchemaProvider
from core.storage import JsonMigrationStore
from logger import configure_logging, get_logger
from models.migration import Environment, MigrationOptions, MigrationRequest

log = get_logger(__name__)

SOURCE_ID = "source"
TARGET_ID = "target"

_SCRIPT_HEADER = """\
-- Schema Migration Script
-- Migration    : {migration_id}
-- Source       : {source}
-- Target       : {target}
-- Generated    : {timestamp}
-- Steps        : {steps}
-- Risk Level   : {risk}
-- Tool Version : {app_name} v{version}
"""


def render_script(plan: GeneratedMigration, source: str, target: str, with_rollback: bool = False) -> str:
    """Forward script (and optionally the rollback script) with a comment header."""
    parts = [_SCRIPT_HEADER.format(
        migration_id=plan.migration_id,
        source=source,
        target=target,
        timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
        steps=plan.operation_count,
        risk=plan.risk_level.value.upper(),
        app_name=CONFIG.app_name,
        version=CONFIG.app_version,
    )]
    for warning in plan.warnings:
        parts.append(f"-- WARNING: {warning}")
    if not plan.script.steps:
        parts.append("-- Schemas are already in sync.")
    for step in plan.script.steps:
        parts.append(f"\n-- Step {step.order}: {step.name} [{step.risk_level.value}]\n{step.sql}")
    if with_rollback:
        parts.append("\n-- ===== Rollback =====")
        parts.append(plan.rollback_script or "-- No rollback SQL available.")
    return "\n".join(parts) + "\n"


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------

def _snapshot_provider(args: argparse.Namespace) -> SnapshotSchemaProvider:
    schemas = SnapshotSchemaProvider()
    schemas.register_file(SOURCE_ID, args.source)
    schemas.register_file(TARGET_ID, args.target)
    return schemas


def _options(args: argparse.Namespace, **extra) -> MigrationOptions:
    return MigrationOptions(schema_filter=args.schema or None, **extra)


def cmd_diff(args: argparse.Namespace) -> int:
    coordinator = MigrationCoordinator(
        PostgresConnectionProvider(),
        _snapshot_provider(args),
        JsonMigrationStore(CONFIG.migration.storage_path),
    )
    request = MigrationRequest(
        source_connection_id=SOURCE_ID,
        target_connection_id=TARGET_ID,
        options=_options(args),
    )
    plan = asyncio.run(coordinator.generate_migration(request))
    if args.json:
        payload = plan.script.to_dict()
        payload["rollbackScript"] = plan.rollback_script if args.with_rollback else None
        print(json.dumps(payload, indent=2))
    else:
        print(render_script(plan, args.source, args.target, args.with_rollback), end="")
    return 0


def cmd_migrate(args: argparse.Namespace) -> int:
    password = os.getenv("PGPASSWORD")
    if password is None:
        print("PGPASSWORD is not set.", file=sys.stderr)
        return 1

    connections = PostgresConnectionProvider()
    connections.register(ConnectionInfo(
        id=SOURCE_ID, name=f"snapshot:{args.source}",
        host="", port=0, database="", username="",
    ))
    connections.register(ConnectionInfo(
        id=TARGET_ID, name=args.database,
        host=args.host, port=args.port, database=args.database,
        username=args.user, password=password, sslmode=CONFIG.db.sslmode,
    ))
    coordinator = MigrationCoordinator(
        connections,
        _snapshot_provider(args),
        JsonMigrationStore(args.store),
        cleanup_grace_seconds=0,
        progress_cb=lambda message, current, total: print(f"[{current:3d}%] {message}", file=sys.stderr),
    )
    request = MigrationRequest(
        source_connection_id=SOURCE_ID,
        target_connection_id=TARGET_ID,
        options=_options(
            args,
            execute_in_transaction=args.transaction,
            include_rollback=args.include_rollback,
            stop_on_first_error=not args.continue_on_error,
            environment=Environment(args.environment),
            business_rules=args.rule,
            approved_by=args.approved_by,
            business_justification=args.justification,
            author=args.author,
        ),
    )
    try:
        result = asyncio.run(coordinator.execute_migration(request, dry_run=args.dry_run))
    finally:
        connections.close_all()
    print(json.dumps(result.to_wire(), indent=2))
    return 0 if result.success else 1


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="schema-sync",
        description=f"{CONFIG.app_name}: diff and migrate PostgreSQL schemas.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("source", type=Path, help="Snapshot of the desired schema")
    common.add_argument("target", type=Path, help="Snapshot of the current schema")
    common.add_argument(
        "--schema", action="append", default=[],
        help="Only consider this schema (repeatable)",
    )

    diff_parser = subparsers.add_parser("diff", parents=[common], help="Print the migration script")
    diff_parser.add_argument("--json", action="store_true", help="Print the script as JSON")
    diff_parser.add_argument("--with-rollback", action="store_true", help="Include the rollback script")

    migrate_parser = subparsers.add_parser(
        "migrate", parents=[common], help="Run the migration workflow against a database"
    )
    migrate_parser.add_argument("--host", default=CONFIG.db.host)
    migrate_parser.add_argument("--port", type=int, default=CONFIG.db.port)
    migrate_parser.add_argument("--database", required=True)
    migrate_parser.add_argument("--user", required=True)
    migrate_parser.add_argument("--dry-run", action="store_true", help="Log steps without executing them")
    migrate_parser.add_argument("--transaction", action="store_true", help="Run all steps in one transaction")
    migrate_parser.add_argument("--include-rollback", action="store_true",
                                help="Roll back executed steps if the run fails")
    migrate_parser.add_argument("--continue-on-error", action="store_true",
                                help="Keep executing after a failed step")
    migrate_parser.add_argument("--environment", default=Environment.DEVELOPMENT.value,
                                choices=[e.value for e in Environment])
    migrate_parser.add_argument("--rule", action="append", default=[],
                                help="Business rule expression, e.g. max_downtime:600 (repeatable)")
    migrate_parser.add_argument("--approved-by")
    migrate_parser.add_argument("--justification")
    migrate_parser.add_argument("--author")
    migrate_parser.add_argument("--store", type=Path, default=CONFIG.migration.storage_path,
                                help="Migration results file")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        configure_logging("DEBUG")
    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == "diff":
            return cmd_diff(args)
        return cmd_migrate(args)
    except (SchemaSnapshotError, ComparisonError) as exc:
        log.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
