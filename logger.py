"""
logger.py
---------
Logging for the engine and the command line.

Everything logs under the ``schemasync`` logger. Handlers are attached once
when this module is imported; ``configure_logging`` can be called again (for
example by ``main.py --verbose``) to replace them.

Records emitted on behalf of one migration run go through
:class:`MigrationLogAdapter`, which prefixes the message with the migration
id so interleaved concurrent runs stay readable.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, MutableMapping

from config import CONFIG, get_log_level

ROOT_LOGGER_NAME = "schemasync"
_CONSOLE_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s"
_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def configure_logging(level: int | str | None = None, log_file: str | Path | None = None) -> logging.Logger:
    """
    (Re)attach the console handler and the optional file handler.

    Args:
        level:    Console level; defaults to ``LOG_LEVEL`` from the config.
        log_file: Log file path; defaults to ``LOG_FILE`` from the config.
                  The file always receives DEBUG and above.

    Returns:
        The ``schemasync`` root logger.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console_level = level_from_name(level) if isinstance(level, str) else (level or get_log_level())
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(fmt=_CONSOLE_FORMAT, datefmt=_DATE_FORMAT))
    root.addHandler(console)
    root.setLevel(console_level)

    log_file = log_file or CONFIG.migration.log_file
    if log_file:
        path = Path(log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path, encoding="utf-8")
        except OSError as exc:
            root.warning("Could not create log file '%s': %s", path, exc)
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(fmt=_FILE_FORMAT, datefmt=_DATE_FORMAT))
            root.addHandler(file_handler)
            root.setLevel(logging.DEBUG)
    return root


def level_from_name(name: str) -> int:
    """``"WARNING"`` -> ``logging.WARNING``; unknown names map to INFO."""
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """
    Child logger of ``schemasync`` for a module.

    Example::

        log = get_logger(__name__)
        log.warning("Dependency cycle detected: %s", " -> ".join(path))
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class MigrationLogAdapter(logging.LoggerAdapter):
    """Prefixes every message with ``[<migration id>]``."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['migration_id']}] {msg}", kwargs


def get_migration_logger(name: str, migration_id: str) -> MigrationLogAdapter:
    return MigrationLogAdapter(get_logger(name), {"migration_id": migration_id})


configure_logging()
