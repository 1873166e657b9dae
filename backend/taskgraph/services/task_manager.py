"""
Task manager: the narrow contract callers use.

Wires validation, the transaction coordinator, the cache, the batch
processor and the backup engine around one Storage Port. Build it with
``create_task_manager``.
"""

import asyncio
from dataclasses import dataclass

from taskgraph.config import Settings, get_settings
from taskgraph.events import EventBus
from taskgraph.exceptions import (
    BulkOperationError,
    ConcurrencyError,
    DuplicateTaskError,
    NotFoundError,
)
from taskgraph.logging_config import get_logger, setup_logging
from taskgraph.models import TaskStatus, utcnow
from taskgraph.schemas import TaskCreate, TaskRead, TaskUpdate
from taskgraph.services.backup import BackupService
from taskgraph.services.batch import BatchProgressCallback, BatchResult, DependencyBatchProcessor
from taskgraph.services.cache import TaskCache
from taskgraph.services.transactions import TransactionCoordinator
from taskgraph.services.validation import raise_for_violations, validate_batch, validate_task
from taskgraph.storage.base import GraphStorage, TaskStorage
from taskgraph.storage.sql import SqlStorage

logger = get_logger(__name__)


@dataclass
class _PendingCreate:
    """Bulk item whose prerequisites include its parent when the parent is in the same batch."""
    path: str
    dependencies: list[str]
    data: TaskCreate


class TaskManager:
    def __init__(
        self,
        storage: TaskStorage,
        settings: Settings,
        *,
        events: EventBus | None = None,
        cache: TaskCache | None = None,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.events = events or EventBus()
        self.cache = cache or TaskCache(settings.cache, events=self.events)
        self.coordinator = TransactionCoordinator(
            storage, cache=self.cache, events=self.events, settings=settings.transaction
        )
        self.batch = DependencyBatchProcessor.from_settings(settings.batch)
        self.backup = (
            BackupService(storage, settings.backup, cache=self.cache)
            if isinstance(storage, GraphStorage)
            else None
        )
        # The coordinator runs one transaction at a time
        self._tx_lock = asyncio.Lock()

    # ---- validation context ----

    async def _load_view(self, tasks: list[TaskRead]) -> dict[str, TaskRead]:
        """
        Persisted tasks the validator needs to judge ``tasks``: the
        transitive dependency closure, the ancestor chain and direct subtasks.
        """
        view: dict[str, TaskRead] = {}
        frontier: set[str] = set()
        for task in tasks:
            frontier.update(task.dependencies)
            frontier.update(task.subtasks)
            if task.parent_path:
                frontier.add(task.parent_path)

        limits = self.settings.validation
        for _ in range(max(limits.max_dependency_depth, limits.max_hierarchy_depth) + 1):
            frontier -= view.keys()
            if not frontier:
                break
            fetched = await self.storage.get_many(frontier)
            frontier = set()
            for task in fetched:
                view[task.path] = task
                frontier.update(task.dependencies)
                if task.parent_path:
                    frontier.add(task.parent_path)
        return view

    async def _validate(self, task: TaskRead) -> None:
        view = await self._load_view([task])
        raise_for_violations(validate_task(task, view, settings=self.settings.validation))

    # ---- single-task operations ----

    async def create_task(self, data: TaskCreate) -> TaskRead:
        now = utcnow()
        task = TaskRead(**data.model_dump(), created_at=now, updated_at=now)

        if await self.storage.get(task.path) is not None:
            raise DuplicateTaskError(task.path)
        await self._validate(task)

        async with self._tx_lock, self.coordinator.transaction() as tx:
            created = await tx.add_save(task)
            if task.parent_path:
                await self._attach_to_parent(tx, task.parent_path, task.path)

        logger.info(f"Created task {created.path}")
        return created

    async def update_task(
        self,
        path: str,
        updates: TaskUpdate,
        expected_version: int | None = None,
    ) -> TaskRead:
        current = await self.storage.get(path)
        if current is None:
            raise NotFoundError("Task", path)
        if expected_version is not None and current.version != expected_version:
            raise ConcurrencyError(path, expected_version, current.version)

        changes = updates.model_dump(exclude_unset=True)
        candidate = current.model_copy(update=changes, deep=True)
        await self._validate(candidate)

        async with self._tx_lock, self.coordinator.transaction() as tx:
            # Pins the pre-image to the version validated above
            before = await tx.get(path)
            if before is None or before.version != current.version:
                raise ConcurrencyError(path, current.version, before.version if before else None)
            updated = await tx.add_save(candidate)
            if current.parent_path != candidate.parent_path:
                if current.parent_path:
                    await self._detach_from_parent(tx, current.parent_path, path)
                if candidate.parent_path:
                    await self._attach_to_parent(tx, candidate.parent_path, path)

        logger.info(f"Updated task {path} to version {updated.version}")
        return updated

    async def delete_task(self, path: str) -> list[str]:
        """
        Delete a task and all of its descendants.

        Deleted paths are also removed from the dependency lists of surviving
        tasks and from the surviving parent's subtasks. Returns the deleted
        paths, deepest first.
        """
        task = await self.storage.get(path)
        if task is None:
            raise NotFoundError("Task", path)

        doomed = [path]
        queue = [path]
        while queue:
            children = await self.storage.get_children(queue.pop(0))
            for child in children:
                if child.path not in doomed:
                    doomed.append(child.path)
                    queue.append(child.path)
        doomed_set = set(doomed)

        dependents: dict[str, None] = {}
        for doomed_path in doomed:
            for dependent in await self.storage.get_dependents(doomed_path):
                if dependent.path not in doomed_set:
                    dependents.setdefault(dependent.path, None)

        async with self._tx_lock, self.coordinator.transaction() as tx:
            for dependent_path in dependents:
                dependent = await tx.get(dependent_path)
                await tx.add_save(dependent.model_copy(update={
                    "dependencies": [d for d in dependent.dependencies if d not in doomed_set],
                }))
            if task.parent_path and task.parent_path not in doomed_set:
                await self._detach_from_parent(tx, task.parent_path, path)
            for doomed_path in reversed(doomed):
                await tx.add_delete(doomed_path)

        logger.info(
            f"Deleted {len(doomed)} task(s) under {path}; "
            f"updated {len(dependents)} dependent(s)"
        )
        return list(reversed(doomed))

    async def _attach_to_parent(self, tx, parent_path: str, child_path: str) -> None:
        parent = await tx.get(parent_path)
        if parent is None:
            raise NotFoundError("Parent task", parent_path)
        if child_path not in parent.subtasks:
            await tx.add_save(parent.model_copy(update={"subtasks": [*parent.subtasks, child_path]}))

    async def _detach_from_parent(self, tx, parent_path: str, child_path: str) -> None:
        parent = await tx.get(parent_path)
        if parent is not None and child_path in parent.subtasks:
            await tx.add_save(parent.model_copy(update={
                "subtasks": [p for p in parent.subtasks if p != child_path],
            }))

    # ---- reads ----

    async def get_task(self, path: str) -> TaskRead | None:
        cached = self.cache.get(path)
        if cached is not None:
            return cached
        task = await self.storage.get(path)
        if task is not None:
            self.cache.set(task)
        return task

    async def list_tasks(self, limit: int = 100, offset: int = 0) -> list[TaskRead]:
        return await self.storage.list_tasks(limit=limit, offset=offset)

    async def get_tasks_by_pattern(self, pattern: str) -> list[TaskRead]:
        return await self.storage.get_by_pattern(pattern)

    async def get_tasks_by_status(self, status: TaskStatus) -> list[TaskRead]:
        return await self.storage.get_by_status(status)

    async def get_subtasks(self, path: str) -> list[TaskRead]:
        return await self.storage.get_children(path)

    # ---- bulk ----

    async def bulk_create_tasks(
        self,
        items: list[TaskCreate],
        progress: BatchProgressCallback | None = None,
    ) -> BatchResult:
        """
        Create many tasks in dependency order, parents before their children,
        one transaction per task.

        The batch is validated as a whole first, with references between
        batch members allowed in any input order. Per-item failures raise
        BulkOperationError once the batch has run.
        """
        now = utcnow()
        pending = [TaskRead(**item.model_dump(), created_at=now, updated_at=now) for item in items]
        view = await self._load_view(pending)
        violations = validate_batch(
            pending, view, settings=self.settings.validation, allow_missing=True
        )
        raise_for_violations(v for group in violations.values() for v in group)

        members = {item.path for item in items}
        batch_items = []
        for item in items:
            prerequisites = list(item.dependencies)
            # Children are created after their parent
            if item.parent_path in members and item.parent_path not in prerequisites:
                prerequisites.append(item.parent_path)
            batch_items.append(_PendingCreate(item.path, prerequisites, item))

        async def create(pending: _PendingCreate) -> TaskRead:
            return await self.create_task(pending.data)

        result = await self.batch.process_batch(
            batch_items, self.settings.batch.chunk_size, create, progress
        )
        if not result.success:
            errors = [error.to_dict() for error in result.errors]
            errors.extend(
                {"identity": path, "message": "Not attempted after earlier failures", "status": "SKIPPED"}
                for path in result.skipped
            )
            raise BulkOperationError(
                f"Bulk create finished with {result.failed_count} failed and "
                f"{len(result.skipped)} skipped task(s)",
                processed_count=result.processed_count,
                failed_count=result.failed_count + len(result.skipped),
                errors=errors,
            )
        return result

    def sort_by_dependencies(self, tasks: list[TaskRead]) -> list[TaskRead]:
        by_path = {task.path: task for task in tasks}
        return [by_path[path] for path in self.batch.order(tasks)]

    # ---- housekeeping ----

    async def run_maintenance(self) -> bool:
        """Vacuum and checkpoint storage, purge expired cache entries. Never raises."""
        try:
            purged = self.cache.purge_expired()
            await self.storage.checkpoint()
            await self.storage.vacuum()
            logger.info(f"Maintenance complete; purged {purged} expired cache entries")
            return True
        except Exception:
            logger.exception("Maintenance failed")
            return False

    def clear_caches(self) -> None:
        self.cache.clear()
        logger.info("Caches cleared")

    async def close(self) -> None:
        await self.cache.close()
        await self.events.drain()
        await self.storage.close()
        logger.info("Task manager closed")

    async def __aenter__(self) -> "TaskManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


async def create_task_manager(
    settings: Settings | None = None,
    storage: TaskStorage | None = None,
    *,
    configure_logging: bool = False,
) -> TaskManager:
    """
    Build a ready-to-use task manager.

    Opens the configured SQL storage unless one is passed in and starts the
    cache watchdog. Call ``close()`` (or use ``async with``) when done.
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings)

    if storage is None:
        storage = await SqlStorage.from_settings(settings)

    manager = TaskManager(storage, settings)
    await manager.cache.start()
    logger.info("Task manager ready")
    return manager
