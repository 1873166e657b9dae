from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

from taskgraph.models.common import TaskStatus, TaskType, UTCDateTime, utcnow


class Task(SQLModel, table=True):
    """
    Task row.

    Key fields:
    - id: Internal row id, never exposed outside the storage adapter
    - path: Hierarchical application identity (e.g. "web/backend/api")
    - parent_path / project_path: Weak references by identity, not foreign keys
    - version: Optimistic concurrency counter, bumped on every committed mutation
    """

    __tablename__ = "tasks"

    id: Optional[int] = Field(default=None, primary_key=True)
    path: str = Field(index=True, unique=True)
    name: str
    description: str | None = Field(default=None)
    type: TaskType = Field(default=TaskType.TASK)
    status: TaskStatus = Field(default=TaskStatus.PENDING, index=True)
    parent_path: str | None = Field(default=None, index=True)
    project_path: str | None = Field(default=None, index=True)
    subtasks: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    task_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON, nullable=False),
    )
    version: int = Field(default=1, ge=1)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False))
