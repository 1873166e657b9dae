from taskgraph.storage.base import (
    GraphStorage,
    Relationship,
    RelationshipFailure,
    TaskStorage,
)
from taskgraph.storage.sql import SqlStorage

__all__ = [
    "GraphStorage",
    "Relationship",
    "RelationshipFailure",
    "TaskStorage",
    "SqlStorage",
]
