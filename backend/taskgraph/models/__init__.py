from taskgraph.models.common import (
    TERMINAL_FAILURE_STATUSES,
    TERMINAL_STATUSES,
    UTCDateTime,
    TaskStatus,
    TaskType,
    as_utc,
    utcnow,
)
from taskgraph.models.project import Project
from taskgraph.models.task import Task
from taskgraph.models.dependency import Dependency

__all__ = [
    "TERMINAL_FAILURE_STATUSES",
    "TERMINAL_STATUSES",
    "UTCDateTime",
    "TaskStatus",
    "TaskType",
    "as_utc",
    "utcnow",
    "Project",
    "Task",
    "Dependency",
]
