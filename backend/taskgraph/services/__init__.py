from taskgraph.services.backup import BackupService, ImportResult, SnapshotInfo
from taskgraph.services.batch import (
    BatchProgressCallback,
    BatchResult,
    DependencyBatchProcessor,
    ItemCancelledError,
    ItemOutcome,
)
from taskgraph.services.cache import CacheMetrics, TaskCache
from taskgraph.services.task_manager import TaskManager, create_task_manager
from taskgraph.services.transactions import Transaction, TransactionCoordinator
from taskgraph.services.validation import (
    Severity,
    Violation,
    ViolationCode,
    validate_batch,
    validate_task,
)

__all__ = [
    "BackupService",
    "ImportResult",
    "SnapshotInfo",
    "BatchProgressCallback",
    "BatchResult",
    "DependencyBatchProcessor",
    "ItemCancelledError",
    "ItemOutcome",
    "CacheMetrics",
    "TaskCache",
    "TaskManager",
    "create_task_manager",
    "Transaction",
    "TransactionCoordinator",
    "Severity",
    "Violation",
    "ViolationCode",
    "validate_batch",
    "validate_task",
]
