from taskgraph.schemas.project import ProjectCreate, ProjectRead
from taskgraph.schemas.task import TaskCreate, TaskUpdate, TaskRead

__all__ = [
    "ProjectCreate",
    "ProjectRead",
    "TaskCreate",
    "TaskUpdate",
    "TaskRead",
]
