from datetime import datetime

from sqlalchemy import Column
from sqlmodel import SQLModel, Field

from taskgraph.models.common import UTCDateTime, utcnow


class Dependency(SQLModel, table=True):
    """
    Dependency model representing a directed edge in the task DAG.

    dependent_id -> dependency_id means:
    "The dependent task requires the dependency task"

    Both columns hold internal row ids, so an edge can only be rebuilt
    after a restore by matching the tasks' paths.
    """

    __tablename__ = "dependencies"

    # Composite primary key
    dependent_id: int = Field(foreign_key="tasks.id", primary_key=True)
    dependency_id: int = Field(foreign_key="tasks.id", primary_key=True)
    # Position in the dependent's ordered dependency list
    position: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False))
