"""
Dependency-aware batch processor.

Runs an async operation over a set of items so that no item starts before
the items it depends on have resolved:
- Items are ordered by topological layers of the dependency DAG
- Ordered items are cut into chunks; chunks run one after another
- Inside a chunk items run concurrently, each waiting on its in-chunk
  prerequisites, bounded by a semaphore
- Transient failures are retried with exponential backoff
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

import networkx as nx

from taskgraph.config import BatchSettings
from taskgraph.exceptions import CycleDetectedError, ValidationError, is_transient
from taskgraph.logging_config import get_logger
from taskgraph.services.graph import (
    build_dependency_graph,
    dependencies_of,
    find_cycle,
    identity_of,
    topological_sort,
)

logger = get_logger(__name__)


class ItemOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"
    CANCELLED = "CANCELLED"
    SKIPPED = "SKIPPED"


class ItemCancelledError(Exception):
    """Raised by an operation to mark its item cancelled rather than failed."""


@dataclass
class BatchItemError:
    identity: str
    message: str
    status: ItemOutcome
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "message": self.message,
            "status": self.status.value,
            "attempts": self.attempts,
        }


@dataclass
class BatchResult:
    success: bool
    processed_count: int
    failed_count: int
    errors: list[BatchItemError] = field(default_factory=list)
    outcomes: dict[str, ItemOutcome] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def cancelled(self) -> list[str]:
        return [i for i, outcome in self.outcomes.items() if outcome == ItemOutcome.CANCELLED]


class BatchProgressCallback:
    """Hooks fired around each chunk. Subclass and override what you need."""

    def on_batch_start(self, chunk_index: int, total_chunks: int, identities: list[str]) -> None:
        pass

    def on_batch_complete(
        self,
        chunk_index: int,
        total_chunks: int,
        outcomes: dict[str, ItemOutcome],
    ) -> None:
        pass


Operation = Callable[[Any], Awaitable[Any]]


class DependencyBatchProcessor:
    def __init__(
        self,
        concurrency: int = 4,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
        backoff_factor: float = 2.0,
        max_retry_delay: float = 10.0,
    ) -> None:
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.backoff_factor = backoff_factor
        self.max_retry_delay = max_retry_delay

    @classmethod
    def from_settings(cls, settings: BatchSettings) -> "DependencyBatchProcessor":
        return cls(
            concurrency=settings.concurrency,
            max_attempts=settings.max_attempts,
            retry_delay=settings.retry_delay,
            backoff_factor=settings.backoff_factor,
            max_retry_delay=settings.max_retry_delay,
        )

    def order(self, items: Iterable[Any]) -> list[str]:
        """
        Identities of ``items`` in dependency order.

        Raises CycleDetectedError if the items depend on each other circularly.
        """
        items = list(items)
        identities = [identity_of(item) for item in items]
        duplicates = [i for i, n in Counter(identities).items() if n > 1]
        if duplicates:
            raise ValidationError(f"Duplicate item identities in batch: {sorted(duplicates)}")

        graph = build_dependency_graph(items)
        try:
            ordered = topological_sort(graph)
        except nx.NetworkXUnfeasible:
            cycle = find_cycle(graph) or []
            raise CycleDetectedError(cycle) from None

        members = set(identities)
        return [identity for identity in ordered if identity in members]

    async def process_batch(
        self,
        items: Iterable[Any],
        chunk_size: int,
        operation: Operation,
        progress: BatchProgressCallback | None = None,
        *,
        cancelled: Iterable[str] = (),
    ) -> BatchResult:
        """
        Apply ``operation`` to every item in dependency order.

        Items are anything exposing ``path`` (or ``id``) and ``dependencies``.
        Dependencies on identities outside the batch are treated as already
        satisfied. A cycle among the items raises CycleDetectedError before
        ``operation`` is called once.

        Outcomes:
        - COMPLETED: operation returned
        - FAILED: operation raised a permanent error or ran out of attempts
        - BLOCKED: a prerequisite FAILED or was BLOCKED; operation not called
        - CANCELLED: listed in ``cancelled``, raised ItemCancelledError, or a
          prerequisite was CANCELLED; operation not called
        - SKIPPED: in a chunk after one that contained a FAILED item
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")

        items = list(items)
        order = self.order(items)
        by_identity = {identity_of(item): item for item in items}
        pre_cancelled = set(cancelled)

        outcomes: dict[str, ItemOutcome] = {}
        errors: list[BatchItemError] = []
        skipped: list[str] = []
        chunks = [order[i:i + chunk_size] for i in range(0, len(order), chunk_size)]
        semaphore = asyncio.Semaphore(self.concurrency)
        halted = False

        logger.info(f"Processing batch: {len(order)} items in {len(chunks)} chunk(s)")

        for index, chunk in enumerate(chunks):
            if halted:
                skipped.extend(chunk)
                outcomes.update({identity: ItemOutcome.SKIPPED for identity in chunk})
                continue

            self._notify(progress, "on_batch_start", index, len(chunks), list(chunk))

            done = {identity: asyncio.Event() for identity in chunk}
            await asyncio.gather(*[
                self._run_item(
                    identity, by_identity, operation, done, outcomes, errors,
                    pre_cancelled, semaphore,
                )
                for identity in chunk
            ])

            chunk_outcomes = {identity: outcomes[identity] for identity in chunk}
            self._notify(progress, "on_batch_complete", index, len(chunks), chunk_outcomes)

            if ItemOutcome.FAILED in chunk_outcomes.values():
                halted = True
                if index + 1 < len(chunks):
                    logger.warning(
                        f"Chunk {index + 1}/{len(chunks)} had failures; "
                        f"skipping {len(order) - sum(map(len, chunks[:index + 1]))} remaining items"
                    )

        processed = sum(1 for o in outcomes.values() if o == ItemOutcome.COMPLETED)
        failed = sum(1 for o in outcomes.values() if o in (ItemOutcome.FAILED, ItemOutcome.BLOCKED))
        result = BatchResult(
            success=failed == 0 and not skipped,
            processed_count=processed,
            failed_count=failed,
            errors=errors,
            outcomes=outcomes,
            order=order,
            skipped=skipped,
        )
        logger.info(
            f"Batch finished: processed={processed} failed={failed} "
            f"cancelled={len(result.cancelled)} skipped={len(skipped)}"
        )
        return result

    async def _run_item(
        self,
        identity: str,
        by_identity: dict[str, Any],
        operation: Operation,
        done: dict[str, asyncio.Event],
        outcomes: dict[str, ItemOutcome],
        errors: list[BatchItemError],
        pre_cancelled: set[str],
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            prerequisites = [
                dep for dep in dependencies_of(by_identity[identity]) if dep in by_identity
            ]
            # Waiting happens outside the semaphore so waiters never starve runners
            for dep in prerequisites:
                if dep in done:
                    await done[dep].wait()

            blocking = [
                dep for dep in prerequisites
                if outcomes.get(dep) in (ItemOutcome.FAILED, ItemOutcome.BLOCKED)
            ]
            if identity in pre_cancelled or any(
                outcomes.get(dep) == ItemOutcome.CANCELLED for dep in prerequisites
            ):
                outcomes[identity] = ItemOutcome.CANCELLED
                logger.debug(f"Item {identity} cancelled")
            elif blocking:
                outcomes[identity] = ItemOutcome.BLOCKED
                errors.append(BatchItemError(
                    identity,
                    f"Blocked by failed dependencies: {', '.join(blocking)}",
                    ItemOutcome.BLOCKED,
                ))
            else:
                async with semaphore:
                    outcomes[identity] = await self._attempt(
                        identity, by_identity[identity], operation, errors
                    )
        finally:
            if identity not in outcomes:
                outcomes[identity] = ItemOutcome.FAILED
            done[identity].set()

    async def _attempt(
        self,
        identity: str,
        item: Any,
        operation: Operation,
        errors: list[BatchItemError],
    ) -> ItemOutcome:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await operation(item)
                return ItemOutcome.COMPLETED
            except ItemCancelledError:
                logger.info(f"Item {identity} cancelled by operation")
                return ItemOutcome.CANCELLED
            except Exception as exc:
                if is_transient(exc) and attempt < self.max_attempts:
                    delay = min(
                        self.retry_delay * self.backoff_factor ** (attempt - 1),
                        self.max_retry_delay,
                    )
                    logger.warning(
                        f"Transient failure on {identity} (attempt {attempt}/"
                        f"{self.max_attempts}), retrying in {delay:.2f}s: {exc}"
                    )
                    await asyncio.sleep(delay)
                    continue

                logger.error(f"Item {identity} failed after {attempt} attempt(s): {exc}")
                errors.append(BatchItemError(identity, str(exc), ItemOutcome.FAILED, attempt))
                return ItemOutcome.FAILED
        return ItemOutcome.FAILED

    @staticmethod
    def _notify(progress: BatchProgressCallback | None, hook: str, *args: Any) -> None:
        if progress is None:
            return
        callback = getattr(progress, hook, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Progress callback {hook} raised; ignoring")
