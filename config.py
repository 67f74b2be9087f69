"""
config.py
---------
Centralised configuration management for PostgreSQL Schema Sync.

Loads settings from environment variables (with .env file support via
python-dotenv). Provides typed settings as frozen dataclasses so
configuration is immutable at runtime.

Design Decision:
    Every setting has a default, so the engine runs without any .env file
    while still allowing environment-based overrides per deployment.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

_env_path = Path(__file__).parent / ".env"
if _env_path.exists():
    load_dotenv(dotenv_path=_env_path)


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL connection defaults."""
    host: str = field(default_factory=lambda: os.getenv("DB_HOST", "localhost"))
    port: int = field(default_factory=lambda: int(os.getenv("DB_PORT", "5432")))
    connect_timeout: int = field(
        default_factory=lambda: int(os.getenv("DB_CONNECT_TIMEOUT", "10"))
    )
    sslmode: str = field(default_factory=lambda: os.getenv("DB_SSLMODE", "prefer"))
    # Usernames / passwords are NOT stored here; they are supplied per
    # connection at registration time.


@dataclass(frozen=True)
class MigrationConfig:
    """Migration engine settings."""
    default_schema: str = field(
        default_factory=lambda: os.getenv("DEFAULT_SCHEMA", "public")
    )
    step_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("STEP_TIMEOUT_SECONDS", "300"))
    )
    validation_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("VALIDATION_TIMEOUT_SECONDS", "60"))
    )
    backup_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("BACKUP_TIMEOUT_SECONDS", "3600"))
    )
    verification_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("VERIFICATION_TIMEOUT_SECONDS", "30"))
    )
    cleanup_grace_seconds: float = field(
        default_factory=lambda: float(os.getenv("CLEANUP_GRACE_SECONDS", "60"))
    )
    lock_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("LOCK_TIMEOUT_SECONDS", "3600"))
    )
    storage_path: Path = field(
        default_factory=lambda: Path(os.getenv("MIGRATION_STORE", "migrations.json"))
    )
    snapshot_dir: Path = field(
        default_factory=lambda: Path(os.getenv("SNAPSHOT_DIR", "snapshots"))
    )
    log_level: str = field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper()
    )
    log_file: str | None = field(
        default_factory=lambda: os.getenv("LOG_FILE")  # None → log to stderr only
    )


@dataclass(frozen=True)
class AppConfig:
    """Root application configuration."""
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    app_name: str = "PostgreSQL Schema Sync"
    app_version: str = "1.0.0"


def load_config() -> AppConfig:
    """
    Build and return the application configuration.

    Returns:
        AppConfig: Fully populated (and frozen) configuration object.

    Example::

        cfg = load_config()
        print(cfg.db.port)                          # 5432
        print(cfg.migration.step_timeout_seconds)   # 300.0
    """
    return AppConfig()


# Module-level singleton used throughout the application
CONFIG: AppConfig = load_config()


def get_log_level() -> int:
    """Convert string log level from config to logging module constant."""
    level = getattr(logging, CONFIG.migration.log_level, None)
    if not isinstance(level, int):
        return logging.INFO
    return level
