"""
tests/test_storage.py
----------------------
Unit tests for core/storage.py.
Run with: python -m pytest tests/
"""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from core.storage import JsonMigrationStore, StorageError
from models.migration import MigrationResult


@pytest.fixture
def tmp_store(tmp_path: Path) -> JsonMigrationStore:
    """Returns a fresh, empty store backed by a temp file."""
    return JsonMigrationStore(tmp_path / "migrations.json")


def result(migration_id: str, success: bool = True) -> MigrationResult:
    return MigrationResult(
        migration_id=migration_id,
        success=success,
        execution_time=12.5,
        operations_processed=2,
        errors=[] if success else ["Step 2 failed"],
    )


class TestActiveMigrations:
    def test_initially_empty(self, tmp_store: JsonMigrationStore) -> None:
        assert tmp_store.get_active_migrations() == {}
        assert tmp_store.get_migration_results() == []

    def test_add_and_remove(self, tmp_store: JsonMigrationStore) -> None:
        tmp_store.add_active_migration("m1", {"targetConnectionId": "prod"})
        assert tmp_store.get_active_migrations() == {"m1": {"targetConnectionId": "prod"}}
        assert tmp_store.remove_active_migration("m1")
        assert tmp_store.get_active_migrations() == {}

    def test_remove_unknown_returns_false(self, tmp_store: JsonMigrationStore) -> None:
        assert not tmp_store.remove_active_migration("ghost")


class TestResults:
    def test_round_trip_through_file(self, tmp_store: JsonMigrationStore) -> None:
        tmp_store.add_migration_result(result("m1"))
        reopened = JsonMigrationStore(tmp_store.path)
        stored = reopened.get_migration_result("m1")
        assert stored is not None
        assert stored.model_dump() == result("m1").model_dump()

    def test_wire_format_is_camel_case(self, tmp_store: JsonMigrationStore) -> None:
        tmp_store.add_migration_result(result("m1"))
        document = json.loads(tmp_store.path.read_text(encoding="utf-8"))
        assert set(document) == {"activeMigrations", "migrationResults"}
        entry = document["migrationResults"][0]
        assert entry["migrationId"] == "m1"
        assert entry["operationsProcessed"] == 2
        assert "rollbackPerformed" in entry

    def test_duplicate_result_raises(self, tmp_store: JsonMigrationStore) -> None:
        tmp_store.add_migration_result(result("m1"))
        with pytest.raises(StorageError):
            tmp_store.add_migration_result(result("m1", success=False))
        assert len(tmp_store.get_migration_results()) == 1

    def test_missing_result_is_none(self, tmp_store: JsonMigrationStore) -> None:
        assert tmp_store.get_migration_result("ghost") is None

    def test_clear(self, tmp_store: JsonMigrationStore) -> None:
        tmp_store.add_active_migration("m2", {})
        tmp_store.add_migration_result(result("m1"))
        tmp_store.clear()
        assert tmp_store.get_active_migrations() == {}
        assert tmp_store.get_migration_results() == []


class TestFileHandling:
    def test_no_temp_file_left_behind(self, tmp_store: JsonMigrationStore) -> None:
        tmp_store.add_active_migration("m1", {})
        assert not tmp_store.path.with_suffix(".json.tmp").exists()

    def test_invalid_json_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageError):
            JsonMigrationStore(path).get_active_migrations()

    def test_wrong_shape_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "list.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(StorageError):
            JsonMigrationStore(path).get_migration_results()

    def test_directory_in_place_of_file_raises(self, tmp_path: Path) -> None:
        store = JsonMigrationStore(tmp_path)
        with pytest.raises(StorageError, match="Failed to read"):
            store.get_active_migrations()
        with pytest.raises(StorageError):
            store.add_active_migration("m1", {})

    def test_parent_that_is_a_file_raises(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")
        store = JsonMigrationStore(blocker / "migrations.json")
        with pytest.raises(StorageError, match="Failed to write"):
            store.clear()

    def test_wrong_section_types_raise(self, tmp_path: Path) -> None:
        path = tmp_path / "odd.json"
        document = {"activeMigrations": ["m1"], "migrationResults": {"m1": {}}}
        path.write_text(json.dumps(document), encoding="utf-8")
        with pytest.raises(StorageError):
            JsonMigrationStore(path).get_active_migrations()

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        store = JsonMigrationStore(tmp_path / "nested" / "dir" / "migrations.json")
        store.add_active_migration("m1", {})
        assert store.path.exists()
