from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from taskgraph.models import TaskStatus, TaskType


def _dedupe(paths: list[str]) -> list[str]:
    """Strip and de-duplicate identities, keeping first-seen order."""
    seen: dict[str, None] = {}
    for path in paths:
        path = path.strip()
        if path:
            seen.setdefault(path, None)
    return list(seen)


class TaskCreate(BaseModel):
    """Schema for creating a new task."""
    path: str
    name: str
    description: str | None = None
    type: TaskType = TaskType.TASK
    status: TaskStatus = TaskStatus.PENDING
    parent_path: str | None = None
    project_path: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("path")
    @classmethod
    def _strip_path(cls, value: str) -> str:
        return value.strip().strip("/")

    @field_validator("dependencies")
    @classmethod
    def _unique_dependencies(cls, value: list[str]) -> list[str]:
        return _dedupe(value)


class TaskUpdate(BaseModel):
    """Schema for updating a task. Only fields that are set are applied."""
    name: str | None = None
    description: str | None = None
    type: TaskType | None = None
    status: TaskStatus | None = None
    parent_path: str | None = None
    dependencies: list[str] | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("dependencies")
    @classmethod
    def _unique_dependencies(cls, value: list[str] | None) -> list[str] | None:
        return None if value is None else _dedupe(value)


class TaskRead(BaseModel):
    """
    Snapshot of a task as seen by the engine.

    This is what the cache holds, what transactions record as pre-images
    and what the validator inspects.
    """
    path: str
    name: str
    description: str | None = None
    type: TaskType = TaskType.TASK
    status: TaskStatus = TaskStatus.PENDING
    parent_path: str | None = None
    project_path: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    subtasks: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    created_at: datetime
    updated_at: datetime
