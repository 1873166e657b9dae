from datetime import datetime
from typing import Optional

from sqlalchemy import Column
from sqlmodel import SQLModel, Field

from taskgraph.models.common import UTCDateTime, utcnow


class Project(SQLModel, table=True):
    """
    Project model - groups tasks together.

    ``id`` is the internal row id; ``path`` is the application identity
    that survives backup/restore.
    """

    __tablename__ = "projects"

    id: Optional[int] = Field(default=None, primary_key=True)
    path: str = Field(index=True, unique=True)
    name: str
    description: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False))
