"""
Storage Port.

The engine talks to durable storage only through these contracts. Any
backend (embedded relational store, graph store, ...) can implement them;
identities crossing the port are always application-level task paths.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable

from taskgraph.models import TaskStatus
from taskgraph.schemas import ProjectCreate, ProjectRead, TaskRead


@dataclass
class Relationship:
    """Edge between two entities, addressed by application identity."""
    start: str
    end: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "type": self.type,
            "properties": self.properties,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Relationship":
        return cls(
            start=data.get("start") or "",
            end=data.get("end") or "",
            type=data.get("type") or "",
            properties=dict(data.get("properties") or {}),
        )


@dataclass
class RelationshipFailure:
    relationship: Relationship
    reason: str


class TaskStorage(ABC):
    """Durable task CRUD, queries, transactions and maintenance hooks."""

    @abstractmethod
    async def create(self, task: TaskRead) -> TaskRead:
        """Insert a new task. Raises DuplicateTaskError if the path exists."""

    @abstractmethod
    async def update(self, task: TaskRead, expected_version: int) -> TaskRead:
        """Overwrite a task if its stored version equals ``expected_version``."""

    @abstractmethod
    async def put(self, task: TaskRead) -> TaskRead:
        """Upsert a snapshot verbatim, version included. Used to restore pre-images."""

    @abstractmethod
    async def get(self, path: str) -> TaskRead | None: ...

    @abstractmethod
    async def get_many(self, paths: Iterable[str]) -> list[TaskRead]: ...

    @abstractmethod
    async def get_by_pattern(self, pattern: str) -> list[TaskRead]:
        """Tasks whose path matches a glob pattern (``*`` and ``?``)."""

    @abstractmethod
    async def get_by_status(self, status: TaskStatus) -> list[TaskRead]: ...

    @abstractmethod
    async def get_children(self, parent_path: str) -> list[TaskRead]: ...

    @abstractmethod
    async def get_dependents(self, path: str) -> list[TaskRead]:
        """Tasks that list ``path`` among their dependencies."""

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Delete a task and its edges. Returns False if it did not exist."""

    @abstractmethod
    async def delete_many(self, paths: Iterable[str]) -> int: ...

    @abstractmethod
    async def list_tasks(self, limit: int = 100, offset: int = 0) -> list[TaskRead]: ...

    @abstractmethod
    async def count(self) -> int: ...

    @abstractmethod
    async def begin_transaction(self) -> None: ...

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...

    @property
    @abstractmethod
    def in_transaction(self) -> bool: ...

    @abstractmethod
    async def vacuum(self) -> None: ...

    @abstractmethod
    async def checkpoint(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    # Projects

    @abstractmethod
    async def create_project(self, project: ProjectCreate) -> ProjectRead: ...

    @abstractmethod
    async def get_project(self, path: str) -> ProjectRead | None: ...

    @abstractmethod
    async def list_projects(self) -> list[ProjectRead]: ...


class GraphStorage(ABC):
    """Whole-graph access used by backup and restore."""

    @abstractmethod
    async def entity_types(self) -> list[str]:
        """Every entity type, in the order they must be recreated."""

    @abstractmethod
    async def fetch_entities(self, entity_type: str) -> list[dict[str, Any]]:
        """JSON-ready property sets, identified by application identity."""

    @abstractmethod
    async def fetch_relationships(self) -> list[Relationship]: ...

    @abstractmethod
    async def clear_all(self) -> None:
        """Remove every entity and relationship in one durable operation."""

    @abstractmethod
    async def create_entities(self, entity_type: str, entities: list[dict[str, Any]]) -> int: ...

    @abstractmethod
    async def create_relationships(
        self, relationships: list[Relationship]
    ) -> list[RelationshipFailure]:
        """Create edges matched by endpoint identity; unmatched ones are returned."""
