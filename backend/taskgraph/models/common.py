from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    """Current timestamp, timezone-aware UTC."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always binds and returns aware UTC datetimes.

    SQLite stores no offset, so values read back from it are re-tagged.
    """

    impl = DateTime
    cache_ok = True

    def __init__(self) -> None:
        super().__init__(timezone=True)

    def process_bind_param(self, value, dialect):
        return as_utc(value) if value is not None else None

    def process_result_value(self, value, dialect):
        return as_utc(value) if value is not None else None


class TaskType(str, Enum):
    TASK = "TASK"
    GROUP = "GROUP"
    MILESTONE = "MILESTONE"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    BLOCKED = "BLOCKED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_terminal_failure(self) -> bool:
        return self in TERMINAL_FAILURE_STATUSES


TERMINAL_FAILURE_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.CANCELLED})
TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, *TERMINAL_FAILURE_STATUSES})
