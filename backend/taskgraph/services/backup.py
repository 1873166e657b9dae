"""
Backup and restore of the whole task graph.

A snapshot is a directory under the backup root named
``<prefix>-<YYYYmmddHHMMSSffffff>`` holding one JSON file per entity type,
``relationships.json`` and a consolidated ``full-export.json``. Everything
in a snapshot is keyed by application identity, never by storage row ids,
so a restore into an empty database rebuilds the same graph.
"""

import asyncio
import json
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from taskgraph.config import BackupSettings
from taskgraph.exceptions import BackupError
from taskgraph.logging_config import get_logger
from taskgraph.models import utcnow
from taskgraph.services.cache import TaskCache
from taskgraph.storage.base import GraphStorage, Relationship, RelationshipFailure

logger = get_logger(__name__)

FULL_EXPORT_FILE = "full-export.json"
RELATIONSHIPS_FILE = "relationships.json"


def entity_file_name(entity_type: str) -> str:
    """``Project`` -> ``projects.json``"""
    return f"{entity_type.lower()}s.json"


def secure_resolve(base: Path, target: str | Path) -> Path:
    """
    Resolve ``target`` relative to ``base`` and refuse anything that lands
    outside ``base`` (``..`` segments, absolute paths, symlinks).
    """
    base = base.resolve()
    candidate = Path(target)
    resolved = (candidate if candidate.is_absolute() else base / candidate).resolve()
    if resolved != base and base not in resolved.parents:
        raise BackupError(f"Path '{target}' resolves outside the backup root", path=str(target))
    return resolved


@dataclass
class SnapshotInfo:
    name: str
    path: Path
    modified_at: datetime


@dataclass
class ImportResult:
    snapshot: Path
    entities: dict[str, int] = field(default_factory=dict)
    relationships_created: int = 0
    relationship_failures: list[RelationshipFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.relationship_failures


class BackupService:
    def __init__(
        self,
        storage: GraphStorage,
        settings: BackupSettings | None = None,
        cache: TaskCache | None = None,
    ) -> None:
        self.storage = storage
        self.settings = settings or BackupSettings()
        self.cache = cache
        self._lock = asyncio.Lock()

    @property
    def root(self) -> Path:
        return self.settings.backup_root

    async def _acquire(self, operation: str) -> None:
        if self._lock.locked():
            raise BackupError(f"Cannot {operation}: another backup operation is in progress")
        await self._lock.acquire()

    # ---- export ----

    async def export(self) -> Path:
        """Write a new snapshot and return its directory."""
        await self._acquire("export")
        try:
            return await self._export()
        finally:
            self._lock.release()

    async def _export(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        await self.rotate(max(self.settings.max_backups - 1, 0))

        name = f"{self.settings.prefix}-{utcnow().strftime('%Y%m%d%H%M%S%f')}"
        target = secure_resolve(self.root, name)
        logger.info(f"Exporting snapshot to {target}")

        try:
            target.mkdir()
            nodes: dict[str, list[dict[str, Any]]] = {}
            for entity_type in await self.storage.entity_types():
                entities = await self.storage.fetch_entities(entity_type)
                nodes[entity_type] = entities
                _write_json(target / entity_file_name(entity_type), entities)
                logger.debug(f"Exported {len(entities)} {entity_type} entities")

            relationships = [rel.to_dict() for rel in await self.storage.fetch_relationships()]
            _write_json(target / RELATIONSHIPS_FILE, relationships)
            _write_json(target / FULL_EXPORT_FILE, {"nodes": nodes, "relationships": relationships})
        except Exception as exc:
            self._remove_partial(target)
            raise BackupError(f"Export failed: {exc}", path=str(target)) from exc

        logger.info(
            f"Export complete: {sum(map(len, nodes.values()))} entities, "
            f"{len(relationships)} relationships"
        )
        return target

    def _remove_partial(self, target: Path) -> None:
        try:
            secure_resolve(self.root, target)
            if target.exists():
                shutil.rmtree(target)
                logger.warning(f"Removed partial snapshot {target}")
        except (BackupError, OSError) as exc:
            logger.error(f"Could not remove partial snapshot {target}: {exc}")

    # ---- rotation / listing ----

    def _snapshot_dirs(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        prefix = f"{self.settings.prefix}-"
        dirs = [
            entry for entry in self.root.iterdir()
            if entry.is_dir() and not entry.is_symlink() and entry.name.startswith(prefix)
        ]
        return sorted(dirs, key=lambda entry: (entry.stat().st_mtime, entry.name))

    def list_snapshots(self) -> list[SnapshotInfo]:
        """Snapshots under the backup root, newest first."""
        return [
            SnapshotInfo(
                name=entry.name,
                path=entry,
                modified_at=datetime.fromtimestamp(entry.stat().st_mtime, tz=timezone.utc),
            )
            for entry in reversed(self._snapshot_dirs())
        ]

    async def rotate(self, max_count: int) -> list[Path]:
        """Delete the oldest snapshots so at most ``max_count`` remain."""
        snapshots = self._snapshot_dirs()
        excess = len(snapshots) - max(max_count, 0)
        removed: list[Path] = []
        for entry in snapshots[:max(excess, 0)]:
            target = secure_resolve(self.root, entry.name)
            try:
                shutil.rmtree(target)
            except OSError as exc:
                logger.error(f"Failed to remove old snapshot {target}: {exc}")
                continue
            removed.append(target)
            logger.info(f"Rotated out snapshot {target.name}")
        return removed

    # ---- import ----

    async def import_snapshot(self, path: str | Path) -> ImportResult:
        """
        Replace the whole graph with the contents of a snapshot.

        Relationships whose endpoints do not exist after entity creation are
        reported per item; one bad batch does not stop the rest.
        """
        await self._acquire("import")
        try:
            return await self._import(path)
        finally:
            self._lock.release()

    async def _import(self, path: str | Path) -> ImportResult:
        source = secure_resolve(self.root, path)
        if not source.is_dir():
            raise BackupError(f"Snapshot '{path}' not found", path=str(path))

        entity_types = await self.storage.entity_types()
        nodes, relationships = self._read_snapshot(source, entity_types)
        unknown = set(nodes) - set(entity_types)
        if unknown:
            raise BackupError(f"Snapshot contains unknown entity types: {sorted(unknown)}", path=str(source))

        logger.info(f"Importing snapshot {source}")
        result = ImportResult(snapshot=source)
        try:
            await self.storage.clear_all()
            for entity_type in entity_types:
                entities = nodes.get(entity_type, [])
                if entities:
                    result.entities[entity_type] = await self.storage.create_entities(
                        entity_type, entities
                    )
                else:
                    result.entities[entity_type] = 0
        except Exception as exc:
            raise BackupError(f"Import failed while restoring entities: {exc}", path=str(source)) from exc

        batch_size = max(1, self.settings.relationship_batch_size)
        for start in range(0, len(relationships), batch_size):
            batch = relationships[start:start + batch_size]
            try:
                failures = await self.storage.create_relationships(batch)
            except Exception as exc:
                logger.error(
                    f"Relationship batch {start // batch_size + 1} failed entirely: {exc}"
                )
                failures = [RelationshipFailure(rel, str(exc)) for rel in batch]
            result.relationship_failures.extend(failures)
            result.relationships_created += len(batch) - len(failures)

        if self.cache is not None:
            self.cache.clear()

        for failure in result.relationship_failures:
            rel = failure.relationship
            logger.warning(f"Relationship {rel.start} -[{rel.type}]-> {rel.end} skipped: {failure.reason}")
        logger.info(
            f"Import complete: {result.entities}, "
            f"{result.relationships_created} relationships created, "
            f"{len(result.relationship_failures)} failed"
        )
        return result

    def _read_snapshot(
        self,
        source: Path,
        entity_types: list[str],
    ) -> tuple[dict[str, list[dict[str, Any]]], list[Relationship]]:
        full_export = source / FULL_EXPORT_FILE
        try:
            if full_export.exists():
                document = _read_json(full_export)
                nodes = document.get("nodes") or {}
                raw_relationships = document.get("relationships") or []
            else:
                nodes = {}
                for entity_type in entity_types:
                    file = source / entity_file_name(entity_type)
                    if file.exists():
                        nodes[entity_type] = _read_json(file)
                rel_file = source / RELATIONSHIPS_FILE
                raw_relationships = _read_json(rel_file) if rel_file.exists() else []
                if not nodes and not rel_file.exists():
                    raise BackupError(f"Snapshot '{source.name}' contains no export files", path=str(source))
        except (OSError, ValueError) as exc:
            raise BackupError(f"Unreadable snapshot '{source.name}': {exc}", path=str(source)) from exc

        return nodes, [Relationship.from_dict(raw) for raw in raw_relationships]


def _write_json(path: Path, data: Any) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, default=str)


def _read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)
