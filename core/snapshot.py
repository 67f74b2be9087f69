"""
core/snapshot.py
----------------
Schema snapshots: the reference schema-introspection collaborator.

Snapshot File Format::

    {
      "connectionId": "prod",
      "capturedAt": "2026-01-31T12:00:00+00:00",
      "objects": [
        {"type": "table", "schema": "public", "name": "users",
         "definition": "CREATE TABLE public.users (...)",
         "dependencies": []}
      ]
    }

A bare JSON list of objects is accepted as well.

Design Decisions:
    * Objects in system schemas (``information_schema``, ``pg_catalog``,
      ``pg_toast`` and the per-session temp namespaces) are never returned.
    * Cluster-wide objects (extensions, roles, tablespaces) are not subject
      to the schema filter.
    * Snapshots are written with the same write-then-rename pattern as the
      migration store.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol, Sequence

from logger import get_logger
from models.schema import SchemaObject

log = get_logger(__name__)

SYSTEM_SCHEMAS = frozenset({"information_schema", "pg_catalog", "pg_toast"})
_TEMP_SCHEMA_PREFIXES = ("pg_temp_", "pg_toast_temp_")


class SchemaSnapshotError(Exception):
    """Raised when a snapshot cannot be read, parsed or found."""


class SchemaProvider(Protocol):
    """What the coordinator needs from a schema-introspection collaborator."""

    async def fetch_objects(
        self, connection_id: str, schema_filter: Sequence[str] | None = None
    ) -> list[SchemaObject]:
        ...


def is_system_schema(schema: str) -> bool:
    name = schema.lower()
    return name in SYSTEM_SCHEMAS or name == "pg_temp" or name.startswith(_TEMP_SCHEMA_PREFIXES)


def filter_objects(
    objects: Iterable[SchemaObject], schema_filter: Sequence[str] | None = None
) -> list[SchemaObject]:
    """Drop system-schema objects and, when given, objects outside *schema_filter*."""
    wanted = set(schema_filter) if schema_filter else None
    kept = []
    for obj in objects:
        if obj.type.is_global:
            kept.append(obj)
        elif is_system_schema(obj.schema):
            continue
        elif wanted is None or obj.schema in wanted:
            kept.append(obj)
    return kept


def load_snapshot(file_path: str | Path) -> list[SchemaObject]:
    """
    Read the schema objects stored in a snapshot file.

    Raises:
        SchemaSnapshotError: If the file is missing, not JSON, or holds an
                             object with an unknown type.

    Example::

        objects = load_snapshot("snapshots/prod.json")
        print([obj.key for obj in objects])
    """
    path = Path(file_path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise SchemaSnapshotError(f"Snapshot not found: '{path}'") from exc
    except OSError as exc:
        raise SchemaSnapshotError(f"Cannot read snapshot '{path}': {exc}") from exc
    except json.JSONDecodeError as exc:
        raise SchemaSnapshotError(f"Invalid JSON in snapshot '{path}': {exc}") from exc

    items = raw.get("objects", []) if isinstance(raw, dict) else raw
    if not isinstance(items, list):
        raise SchemaSnapshotError(f"Snapshot '{path}' has no object list")
    try:
        objects = [SchemaObject.from_dict(item) for item in items]
    except (KeyError, TypeError, ValueError) as exc:
        raise SchemaSnapshotError(f"Invalid object in snapshot '{path}': {exc}") from exc
    log.info("Loaded %d object(s) from snapshot '%s'.", len(objects), path)
    return objects


def save_snapshot(
    file_path: str | Path, objects: Iterable[SchemaObject], connection_id: str | None = None
) -> None:
    path = Path(file_path)
    document: dict[str, Any] = {
        "connectionId": connection_id,
        "capturedAt": datetime.now(timezone.utc).isoformat(),
        "objects": [obj.to_dict() for obj in objects],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(document, indent=2), encoding="utf-8")
    tmp.replace(path)
    log.debug("Saved %d object(s) to snapshot '%s'.", len(document["objects"]), path)


class SnapshotSchemaProvider:
    """
    Serves schema objects from registered collections or snapshot files.

    Objects registered with :meth:`register` take precedence; otherwise
    ``<snapshot_dir>/<connection_id>.json`` is read on every fetch.

    Example::

        provider = SnapshotSchemaProvider(Path("snapshots"))
        provider.register("dev", load_snapshot("dev.json"))
        objects = asyncio.run(provider.fetch_objects("dev", ["public"]))
    """

    def __init__(self, snapshot_dir: Path | str | None = None) -> None:
        self._snapshot_dir = Path(snapshot_dir) if snapshot_dir is not None else None
        self._registered: dict[str, list[SchemaObject]] = {}

    def register(self, connection_id: str, objects: Iterable[SchemaObject]) -> None:
        self._registered[connection_id] = list(objects)

    def register_file(self, connection_id: str, file_path: str | Path) -> None:
        self.register(connection_id, load_snapshot(file_path))

    def snapshot_path(self, connection_id: str) -> Path | None:
        if self._snapshot_dir is None:
            return None
        return self._snapshot_dir / f"{connection_id}.json"

    async def fetch_objects(
        self, connection_id: str, schema_filter: Sequence[str] | None = None
    ) -> list[SchemaObject]:
        """
        Return the objects captured for *connection_id*.

        Raises:
            SchemaSnapshotError: If nothing is registered or stored for it.
        """
        if connection_id in self._registered:
            objects = self._registered[connection_id]
        else:
            path = self.snapshot_path(connection_id)
            if path is None or not path.exists():
                raise SchemaSnapshotError(f"No schema snapshot for connection {connection_id}")
            objects = load_snapshot(path)
        return filter_objects(objects, schema_filter)
