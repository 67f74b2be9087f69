"""
core/storage.py
---------------
Persistence of active migrations and terminal migration results.

Design Decision:
    The store is one JSON document ``{"activeMigrations": {...},
    "migrationResults": [...]}``. Every operation loads the whole document,
    modifies it and replaces it with a write-then-rename, so a crash never
    leaves a half-written file. Results are append-only: a result id can be
    written once and never changes afterwards.
"""
from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from logger import get_logger
from models.migration import MigrationResult

log = get_logger(__name__)


class StorageError(Exception):
    """Raised when the store cannot be read or a write is rejected."""


class MigrationStore(Protocol):
    """What the coordinator needs from a persistence collaborator."""

    def add_active_migration(self, migration_id: str, info: dict[str, Any]) -> None:
        ...

    def remove_active_migration(self, migration_id: str) -> bool:
        ...

    def get_active_migrations(self) -> dict[str, dict[str, Any]]:
        ...

    def add_migration_result(self, result: MigrationResult) -> None:
        ...

    def get_migration_results(self) -> list[MigrationResult]:
        ...


def _empty_document() -> dict[str, Any]:
    return {"activeMigrations": {}, "migrationResults": []}


class JsonMigrationStore:
    """
    JSON-file migration store.

    Example::

        store = JsonMigrationStore(Path("migrations.json"))
        store.add_migration_result(result)
        print(len(store.get_migration_results()))
    """

    def __init__(self, file_path: Path | str) -> None:
        self._path = Path(file_path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Document I/O
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, Any]:
        """
        Read the whole document.

        Does not raise on a missing file (returns an empty document).

        Raises:
            StorageError: If the file cannot be read, is not valid JSON or
                          has the wrong shape.
        """
        try:
            if not self._path.exists():
                return _empty_document()
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StorageError(f"Invalid JSON in migration store '{self._path}': {exc}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to read migration store '{self._path}': {exc}") from exc
        if not isinstance(raw, dict):
            raise StorageError(f"Migration store '{self._path}' must contain a JSON object")
        active = raw.get("activeMigrations") or {}
        results = raw.get("migrationResults") or []
        if not isinstance(active, dict) or not isinstance(results, list):
            raise StorageError(f"Migration store '{self._path}' has an unexpected layout")
        document = _empty_document()
        document["activeMigrations"].update(active)
        document["migrationResults"].extend(results)
        return document

    def _save(self, document: dict[str, Any]) -> None:
        """Replace the document atomically (write-then-rename)."""
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(document, indent=2), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as exc:
            raise StorageError(f"Failed to write migration store '{self._path}': {exc}") from exc

    # ------------------------------------------------------------------
    # Active migrations
    # ------------------------------------------------------------------

    def add_active_migration(self, migration_id: str, info: dict[str, Any]) -> None:
        with self._lock:
            document = self._load()
            document["activeMigrations"][migration_id] = info
            self._save(document)
        log.debug("Recorded active migration %s", migration_id)

    def remove_active_migration(self, migration_id: str) -> bool:
        """Remove an active migration. Returns True if it was present."""
        with self._lock:
            document = self._load()
            if migration_id not in document["activeMigrations"]:
                return False
            del document["activeMigrations"][migration_id]
            self._save(document)
        log.debug("Removed active migration %s", migration_id)
        return True

    def get_active_migrations(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return self._load()["activeMigrations"]

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def add_migration_result(self, result: MigrationResult) -> None:
        """
        Append a terminal result.

        Raises:
            StorageError: If a result with the same migration id exists.
        """
        with self._lock:
            document = self._load()
            if any(r.get("migrationId") == result.migration_id for r in document["migrationResults"]):
                raise StorageError(f"Result for migration {result.migration_id} already stored")
            document["migrationResults"].append(result.to_wire())
            self._save(document)
        log.info("Stored result for migration %s (success=%s)", result.migration_id, result.success)

    def get_migration_results(self) -> list[MigrationResult]:
        with self._lock:
            raw_results = self._load()["migrationResults"]
        try:
            return [MigrationResult.model_validate(raw) for raw in raw_results]
        except ValidationError as exc:
            raise StorageError(f"Corrupt migration result in '{self._path}': {exc}") from exc

    def get_migration_result(self, migration_id: str) -> MigrationResult | None:
        for result in self.get_migration_results():
            if result.migration_id == migration_id:
                return result
        return None

    def clear(self) -> None:
        """Drop all active migrations and results."""
        with self._lock:
            self._save(_empty_document())
        log.info("Cleared migration store '%s'", self._path)
