"""
Transaction coordinator.

Groups task mutations into one atomic unit on top of the Storage Port:
- Pre-images are captured on the first touch of each identity
- Versions are stamped at staging time (previous + 1, or 1 for new tasks)
- Commit flushes the op log inside a single storage transaction
- Rollback restores pre-images, best effort
"""

import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncGenerator

from taskgraph.config import TransactionSettings
from taskgraph.events import EventBus, EventType
from taskgraph.exceptions import (
    ConcurrencyError,
    NotFoundError,
    TransactionError,
    TransactionFinalizedError,
)
from taskgraph.logging_config import get_logger
from taskgraph.models import utcnow
from taskgraph.schemas import TaskRead
from taskgraph.services.cache import TaskCache
from taskgraph.storage.base import TaskStorage

logger = get_logger(__name__)

_MISSING = object()


class OperationType(str, Enum):
    SAVE = "save"
    DELETE = "delete"


class TransactionState(str, Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Operation:
    type: OperationType
    path: str
    task: TaskRead | None = None


class Transaction:
    """
    One unit of work. Obtain through ``TransactionCoordinator.begin()``.

    ``pre_images`` maps each touched path to its persisted snapshot, or None
    if it did not exist when first touched.
    """

    def __init__(self, coordinator: "TransactionCoordinator") -> None:
        self.id = uuid.uuid4().hex[:12]
        self.state = TransactionState.ACTIVE
        self.operations: list[Operation] = []
        self.pre_images: dict[str, TaskRead | None] = {}
        self.started_at = time.monotonic()
        self._coordinator = coordinator
        # Latest staged state per path; None once staged for deletion
        self._staged: dict[str, TaskRead | None] = {}
        # Set once commit starts writing to storage
        self._flushed = False

    def _ensure_active(self) -> None:
        if self.state != TransactionState.ACTIVE:
            raise TransactionFinalizedError(self.id, self.state.value)

    def _ensure_capacity(self) -> None:
        limit = self._coordinator.settings.max_operations
        if len(self.operations) >= limit:
            raise TransactionError(
                f"Transaction {self.id} exceeds {limit} operations",
                transaction_id=self.id,
            )

    async def _current(self, path: str) -> TaskRead | None:
        """State of ``path`` as this transaction sees it."""
        staged = self._staged.get(path, _MISSING)
        if staged is not _MISSING:
            return staged
        if path not in self.pre_images:
            self.pre_images[path] = await self._coordinator.storage.get(path)
        return self.pre_images[path]

    async def get(self, path: str) -> TaskRead | None:
        """Read through the transaction: staged state first, then storage."""
        self._ensure_active()
        current = await self._current(path)
        return current.model_copy(deep=True) if current else None

    async def add_save(self, task: TaskRead) -> TaskRead:
        """
        Stage a create or update. Returns the snapshot that will be written,
        with its version and timestamps stamped.
        """
        self._ensure_active()
        self._ensure_capacity()

        previous = await self._current(task.path)
        persisted = self.pre_images.get(task.path)
        # One committed transaction bumps a task's version exactly once
        staged = task.model_copy(
            update={
                "version": persisted.version + 1 if persisted else 1,
                "created_at": previous.created_at if previous else task.created_at,
                "updated_at": utcnow(),
            },
            deep=True,
        )

        self._staged[task.path] = staged
        self.operations.append(Operation(OperationType.SAVE, task.path, staged))
        return staged.model_copy(deep=True)

    async def add_delete(self, path: str) -> None:
        self._ensure_active()
        self._ensure_capacity()

        if await self._current(path) is None:
            raise NotFoundError("Task", path)
        self._staged[path] = None
        self.operations.append(Operation(OperationType.DELETE, path))

    def is_empty(self) -> bool:
        return not self.operations

    def affected_identities(self) -> list[str]:
        return list(dict.fromkeys(op.path for op in self.operations))

    async def commit(self) -> list[TaskRead]:
        return await self._coordinator.commit(self)

    async def rollback(self) -> None:
        await self._coordinator.rollback(self)


class TransactionCoordinator:
    def __init__(
        self,
        storage: TaskStorage,
        cache: TaskCache | None = None,
        events: EventBus | None = None,
        settings: TransactionSettings | None = None,
    ) -> None:
        self.storage = storage
        self.cache = cache
        self.events = events
        self.settings = settings or TransactionSettings()
        self._active: Transaction | None = None

    @property
    def active(self) -> Transaction | None:
        return self._active

    def begin(self) -> Transaction:
        if self._active is not None:
            raise TransactionError(
                f"Transaction {self._active.id} is already open; nested or concurrent "
                "transactions are not supported",
                transaction_id=self._active.id,
            )
        self._active = Transaction(self)
        logger.debug(f"Transaction {self._active.id} started")
        return self._active

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Transaction, None]:
        """Commit on normal exit, roll back if the block raises."""
        tx = self.begin()
        try:
            yield tx
        except BaseException:
            if tx.state == TransactionState.ACTIVE:
                await self.rollback(tx)
            raise
        if tx.state == TransactionState.ACTIVE:
            await self.commit(tx)

    async def commit(self, tx: Transaction) -> list[TaskRead]:
        """
        Flush the op log atomically. Returns the snapshots written.

        On failure storage is rolled back, pre-images are restored and a
        TransactionError is raised (a version conflict surfaces as
        ConcurrencyError). Cancellation is cleaned up the same way and then
        propagates unchanged.
        """
        tx._ensure_active()
        if tx.is_empty():
            self._finalize(tx, TransactionState.COMMITTED)
            return []

        elapsed = time.monotonic() - tx.started_at
        if elapsed > self.settings.timeout_seconds:
            logger.warning(
                f"Transaction {tx.id} committing after {elapsed:.1f}s "
                f"(timeout {self.settings.timeout_seconds}s)"
            )

        final = self._final_states(tx)
        try:
            tx._flushed = True
            await self.storage.begin_transaction()
            for path, task in final.items():
                before = tx.pre_images.get(path)
                if task is None:
                    if before is not None:
                        await self.storage.delete(path)
                elif before is None:
                    await self.storage.create(task)
                else:
                    await self.storage.update(task, expected_version=before.version)
            await self.storage.commit()
        except BaseException as exc:
            # Cancellation too: the transaction always ends finalized
            logger.error(f"Transaction {tx.id} commit failed: {exc!r}")
            try:
                await self.storage.rollback()
                # Storage discarded every write; restoring pre-images would
                # clobber changes committed by others in the meantime
                tx._flushed = False
            except Exception as rollback_exc:
                logger.error(f"Transaction {tx.id} storage rollback failed: {rollback_exc}")
            restore_failures: dict[str, str] = {}
            try:
                await self.rollback(tx)
            except TransactionError as rollback_exc:
                logger.error(f"Transaction {tx.id} rollback after failed commit: {rollback_exc}")
                restore_failures = rollback_exc.failures
            if not isinstance(exc, Exception):
                raise
            if isinstance(exc, ConcurrencyError):
                raise exc
            raise TransactionError(
                f"Transaction {tx.id} failed to commit: {exc}",
                transaction_id=tx.id,
                failures=restore_failures,
            ) from exc

        self._finalize(tx, TransactionState.COMMITTED)
        written = [task for task in final.values() if task is not None]
        self._publish(tx, final)
        logger.info(
            f"Transaction {tx.id} committed: {len(tx.operations)} operation(s) "
            f"on {len(final)} task(s)"
        )
        return written

    def _final_states(self, tx: Transaction) -> dict[str, TaskRead | None]:
        final: dict[str, TaskRead | None] = {}
        for path in tx.affected_identities():
            state = tx._staged[path]
            # Created and deleted within the same transaction: nothing to write
            if state is None and tx.pre_images.get(path) is None:
                continue
            final[path] = state
        return final

    def _publish(self, tx: Transaction, final: dict[str, TaskRead | None]) -> None:
        for path, task in final.items():
            before = tx.pre_images.get(path)
            if task is None:
                if self.cache is not None:
                    self.cache.delete(path)
                event_type = EventType.TASK_DELETED
                payload = {"path": path, "version": before.version if before else None}
            else:
                if self.cache is not None:
                    self.cache.set(task)
                event_type = EventType.TASK_CREATED if before is None else EventType.TASK_UPDATED
                payload = {"path": path, "version": task.version, "status": task.status.value}
            if self.events is not None:
                self.events.emit(event_type, transaction_id=tx.id, **payload)

    async def rollback(self, tx: Transaction) -> None:
        """
        Restore every touched identity to its pre-image.

        Keeps going past individual failures and reports them all at the end;
        identities already restored stay restored.
        """
        tx._ensure_active()
        failures: dict[str, str] = {}

        if self.storage.in_transaction:
            try:
                await self.storage.rollback()
            except Exception as exc:
                logger.error(f"Transaction {tx.id}: storage rollback failed: {exc}")

        for path, before in tx.pre_images.items():
            if path not in tx._staged:
                continue
            if not tx._flushed:
                # Nothing reached storage; only the cache can be stale
                if self.cache is not None:
                    self.cache.delete(path)
                continue
            try:
                current = await self.storage.get(path)
                if before is None:
                    if current is not None:
                        await self.storage.delete(path)
                elif current != before:
                    await self.storage.put(before)
            except Exception as exc:
                logger.error(f"Transaction {tx.id}: failed to restore {path}: {exc}")
                failures[path] = str(exc)
            finally:
                if self.cache is not None:
                    self.cache.delete(path)

        self._finalize(tx, TransactionState.ROLLED_BACK)
        if failures:
            raise TransactionError(
                f"Transaction {tx.id} rolled back with {len(failures)} failure(s)",
                transaction_id=tx.id,
                failures=failures,
            )
        logger.info(f"Transaction {tx.id} rolled back")

    def _finalize(self, tx: Transaction, state: TransactionState) -> None:
        tx.state = state
        if self._active is tx:
            self._active = None
