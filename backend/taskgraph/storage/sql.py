"""
SQL adapter for the Storage Port, built on SQLModel and async SQLAlchemy.

Tasks reference each other through the ``dependencies`` join table keyed
by internal row ids; everything leaving this module is expressed in task
paths instead.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Iterable

from sqlalchemy import delete, func, or_, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased
from sqlmodel import select

from taskgraph.config import Settings
from taskgraph.database import (
    create_engine,
    create_session_maker,
    init_db,
    is_sqlite_url,
    session_scope,
)
from taskgraph.exceptions import (
    ConcurrencyError,
    DuplicateTaskError,
    NotFoundError,
    StorageError,
    TaskgraphException,
    is_transient_message,
)
from taskgraph.logging_config import get_logger
from taskgraph.models import Dependency, Project, Task, TaskStatus, as_utc, utcnow
from taskgraph.schemas import ProjectCreate, ProjectRead, TaskRead
from taskgraph.storage.base import (
    GraphStorage,
    Relationship,
    RelationshipFailure,
    TaskStorage,
)

logger = get_logger(__name__)

DEPENDS_ON = "DEPENDS_ON"

# Creation order matters on restore: projects before the tasks that name them
ENTITY_MODELS: dict[str, type] = {
    "Project": Project,
    "Task": Task,
}


def glob_to_like(pattern: str) -> str:
    """Translate a ``*``/``?`` glob into a LIKE pattern with ``\\`` escapes."""
    escaped = pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped.replace("**", "*").replace("*", "%").replace("?", "_")


class SqlStorage(TaskStorage, GraphStorage):
    """
    Task storage over an async SQLAlchemy engine.

    Outside an explicit transaction every call runs in its own session that
    commits on success. Between ``begin_transaction`` and ``commit``/``rollback``
    all calls share one session.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.engine = engine
        self._session_maker = session_maker or create_session_maker(engine)
        self._tx: AsyncSession | None = None
        self._tx_owner: asyncio.Task | None = None

    @classmethod
    async def from_settings(cls, settings: Settings) -> "SqlStorage":
        engine = create_engine(settings)
        await init_db(engine)
        logger.info(f"Storage ready: {engine.url.render_as_string(hide_password=True)}")
        return cls(engine)

    # ---- low-level helpers ----

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            # Only the task that opened the transaction shares its session
            if self._tx is not None and asyncio.current_task() is self._tx_owner:
                yield self._tx
            else:
                async with session_scope(self._session_maker) as session:
                    yield session
        except TaskgraphException:
            raise
        except IntegrityError as exc:
            raise StorageError(f"{operation} failed: {exc.orig}", operation) from exc
        except SQLAlchemyError as exc:
            raise StorageError(
                f"{operation} failed: {exc}",
                operation,
                transient=is_transient_message(str(exc)),
            ) from exc

    async def _row(self, session: AsyncSession, path: str) -> Task | None:
        result = await session.execute(select(Task).where(Task.path == path))
        return result.scalars().first()

    async def _dependency_paths(
        self, session: AsyncSession, task_ids: list[int]
    ) -> dict[int, list[str]]:
        if not task_ids:
            return {}
        query = (
            select(Dependency.dependent_id, Task.path)
            .join(Task, Task.id == Dependency.dependency_id)
            .where(Dependency.dependent_id.in_(task_ids))
            .order_by(Dependency.dependent_id, Dependency.position)
        )
        result = await session.execute(query)
        paths: dict[int, list[str]] = {}
        for dependent_id, path in result.all():
            paths.setdefault(dependent_id, []).append(path)
        return paths

    async def _load(self, session: AsyncSession, rows: list[Task]) -> list[TaskRead]:
        deps = await self._dependency_paths(session, [row.id for row in rows])
        return [self._to_read(row, deps.get(row.id, [])) for row in rows]

    @staticmethod
    def _to_read(row: Task, dependencies: list[str]) -> TaskRead:
        return TaskRead(
            path=row.path,
            name=row.name,
            description=row.description,
            type=row.type,
            status=row.status,
            parent_path=row.parent_path,
            project_path=row.project_path,
            dependencies=list(dependencies),
            subtasks=list(row.subtasks or []),
            metadata=dict(row.task_metadata or {}),
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _column_values(task: TaskRead) -> dict[str, Any]:
        return {
            "name": task.name,
            "description": task.description,
            "type": task.type,
            "status": task.status,
            "parent_path": task.parent_path,
            "project_path": task.project_path,
            "subtasks": list(task.subtasks),
            "task_metadata": dict(task.metadata),
            "version": task.version,
            "created_at": task.created_at,
            "updated_at": task.updated_at,
        }

    async def _sync_dependencies(
        self, session: AsyncSession, task_id: int, paths: list[str]
    ) -> None:
        await session.execute(delete(Dependency).where(Dependency.dependent_id == task_id))
        if not paths:
            return
        result = await session.execute(select(Task.path, Task.id).where(Task.path.in_(paths)))
        ids = dict(result.all())
        for position, path in enumerate(paths):
            if path not in ids:
                raise NotFoundError("Dependency task", path)
            session.add(Dependency(dependent_id=task_id, dependency_id=ids[path], position=position))
        await session.flush()

    async def _insert(self, session: AsyncSession, task: TaskRead) -> None:
        row = Task(path=task.path, **self._column_values(task))
        session.add(row)
        await session.flush()
        await self._sync_dependencies(session, row.id, task.dependencies)

    # ---- tasks ----

    async def create(self, task: TaskRead) -> TaskRead:
        async with self._session("create") as session:
            if await self._row(session, task.path) is not None:
                raise DuplicateTaskError(task.path)
            await self._insert(session, task)
        logger.debug(f"Created task row: path={task.path} version={task.version}")
        return task

    async def update(self, task: TaskRead, expected_version: int) -> TaskRead:
        async with self._session("update") as session:
            row = await self._row(session, task.path)
            if row is None:
                raise NotFoundError("Task", task.path)
            result = await session.execute(
                update(Task)
                .where(Task.id == row.id, Task.version == expected_version)
                .values(**self._column_values(task))
            )
            if result.rowcount == 0:
                raise ConcurrencyError(task.path, expected_version, row.version)
            await self._sync_dependencies(session, row.id, task.dependencies)
        logger.debug(
            f"Updated task row: path={task.path} version {expected_version} -> {task.version}"
        )
        return task

    async def put(self, task: TaskRead) -> TaskRead:
        async with self._session("put") as session:
            row = await self._row(session, task.path)
            if row is None:
                await self._insert(session, task)
            else:
                await session.execute(
                    update(Task)
                    .where(Task.id == row.id)
                    .values(**self._column_values(task))
                )
                await self._sync_dependencies(session, row.id, task.dependencies)
        return task

    async def get(self, path: str) -> TaskRead | None:
        async with self._session("get") as session:
            row = await self._row(session, path)
            if row is None:
                return None
            return (await self._load(session, [row]))[0]

    async def get_many(self, paths: Iterable[str]) -> list[TaskRead]:
        paths = list(paths)
        if not paths:
            return []
        return await self._query("get_many", Task.path.in_(paths))

    async def get_by_pattern(self, pattern: str) -> list[TaskRead]:
        return await self._query("get_by_pattern", Task.path.like(glob_to_like(pattern), escape="\\"))

    async def get_by_status(self, status: TaskStatus) -> list[TaskRead]:
        return await self._query("get_by_status", Task.status == status)

    async def get_children(self, parent_path: str) -> list[TaskRead]:
        return await self._query("get_children", Task.parent_path == parent_path)

    async def get_dependents(self, path: str) -> list[TaskRead]:
        target = aliased(Task)
        dependent_ids = (
            select(Dependency.dependent_id)
            .join(target, target.id == Dependency.dependency_id)
            .where(target.path == path)
        )
        return await self._query("get_dependents", Task.id.in_(dependent_ids))

    async def _query(self, operation: str, *criteria) -> list[TaskRead]:
        async with self._session(operation) as session:
            result = await session.execute(select(Task).where(*criteria).order_by(Task.path))
            return await self._load(session, list(result.scalars().all()))

    async def delete(self, path: str) -> bool:
        async with self._session("delete") as session:
            row = await self._row(session, path)
            if row is None:
                return False
            await session.execute(
                delete(Dependency).where(
                    or_(Dependency.dependent_id == row.id, Dependency.dependency_id == row.id)
                )
            )
            await session.delete(row)
            await session.flush()
        logger.debug(f"Deleted task row: path={path}")
        return True

    async def delete_many(self, paths: Iterable[str]) -> int:
        deleted = 0
        for path in paths:
            if await self.delete(path):
                deleted += 1
        return deleted

    async def list_tasks(self, limit: int = 100, offset: int = 0) -> list[TaskRead]:
        async with self._session("list_tasks") as session:
            result = await session.execute(
                select(Task).order_by(Task.path).offset(offset).limit(limit)
            )
            return await self._load(session, list(result.scalars().all()))

    async def count(self) -> int:
        async with self._session("count") as session:
            result = await session.execute(select(func.count()).select_from(Task))
            return int(result.scalar_one())

    # ---- transactions ----

    @property
    def in_transaction(self) -> bool:
        return self._tx is not None

    async def begin_transaction(self) -> None:
        if self._tx is not None:
            raise StorageError("A storage transaction is already active", "begin_transaction")
        self._tx = self._session_maker()
        self._tx_owner = asyncio.current_task()

    async def commit(self) -> None:
        if self._tx is None:
            raise StorageError("No active storage transaction", "commit")
        session, self._tx, self._tx_owner = self._tx, None, None
        try:
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            raise StorageError(
                f"commit failed: {exc}", "commit", transient=is_transient_message(str(exc))
            ) from exc
        finally:
            await session.close()

    async def rollback(self) -> None:
        if self._tx is None:
            return
        session, self._tx, self._tx_owner = self._tx, None, None
        try:
            await session.rollback()
        finally:
            await session.close()

    # ---- maintenance ----

    async def vacuum(self) -> None:
        statements = ["VACUUM", "ANALYZE"] if is_sqlite_url(str(self.engine.url)) else ["VACUUM ANALYZE"]
        async with self.engine.connect() as conn:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            for statement in statements:
                await conn.execute(text(statement))
        logger.info("Vacuum completed")

    async def checkpoint(self) -> None:
        if not is_sqlite_url(str(self.engine.url)):
            logger.debug("Checkpoint skipped: not a SQLite database")
            return
        async with self.engine.connect() as conn:
            await conn.execute(text("PRAGMA wal_checkpoint(TRUNCATE)"))
        logger.debug("WAL checkpoint completed")

    async def close(self) -> None:
        await self.rollback()
        await self.engine.dispose()

    # ---- projects ----

    async def create_project(self, project: ProjectCreate) -> ProjectRead:
        async with self._session("create_project") as session:
            row = Project(path=project.path, name=project.name, description=project.description)
            session.add(row)
            await session.flush()
            return ProjectRead.model_validate(row)

    async def get_project(self, path: str) -> ProjectRead | None:
        async with self._session("get_project") as session:
            result = await session.execute(select(Project).where(Project.path == path))
            row = result.scalars().first()
            return ProjectRead.model_validate(row) if row else None

    async def list_projects(self) -> list[ProjectRead]:
        async with self._session("list_projects") as session:
            result = await session.execute(select(Project).order_by(Project.path))
            return [ProjectRead.model_validate(row) for row in result.scalars().all()]

    # ---- graph (backup/restore) ----

    async def entity_types(self) -> list[str]:
        return list(ENTITY_MODELS)

    async def fetch_entities(self, entity_type: str) -> list[dict[str, Any]]:
        model = self._entity_model(entity_type)
        async with self._session("fetch_entities") as session:
            result = await session.execute(select(model).order_by(model.path))
            return [row.model_dump(mode="json", exclude={"id"}) for row in result.scalars().all()]

    async def fetch_relationships(self) -> list[Relationship]:
        dependent = aliased(Task)
        dependency = aliased(Task)
        query = (
            select(dependent.path, dependency.path, Dependency.position, Dependency.created_at)
            .join(dependent, dependent.id == Dependency.dependent_id)
            .join(dependency, dependency.id == Dependency.dependency_id)
            .order_by(dependent.path, Dependency.position)
        )
        async with self._session("fetch_relationships") as session:
            result = await session.execute(query)
            return [
                Relationship(
                    start=start,
                    end=end,
                    type=DEPENDS_ON,
                    properties={"position": position, "created_at": created_at.isoformat()},
                )
                for start, end, position, created_at in result.all()
            ]

    async def clear_all(self) -> None:
        async with self._session("clear_all") as session:
            await session.execute(delete(Dependency))
            await session.execute(delete(Task))
            await session.execute(delete(Project))
        logger.warning("All entities and relationships cleared")

    async def create_entities(self, entity_type: str, entities: list[dict[str, Any]]) -> int:
        model = self._entity_model(entity_type)
        async with self._session("create_entities") as session:
            rows = [
                model.model_validate({k: v for k, v in props.items() if k != "id"})
                for props in entities
            ]
            session.add_all(rows)
            await session.flush()
        return len(entities)

    async def create_relationships(
        self, relationships: list[Relationship]
    ) -> list[RelationshipFailure]:
        failures: list[RelationshipFailure] = []
        endpoints = {rel.start for rel in relationships} | {rel.end for rel in relationships}
        async with self._session("create_relationships") as session:
            result = await session.execute(
                select(Task.path, Task.id).where(Task.path.in_(endpoints))
            )
            ids = dict(result.all())
            result = await session.execute(
                select(Dependency.dependent_id, Dependency.dependency_id).where(
                    Dependency.dependent_id.in_(list(ids.values()))
                )
            )
            existing = set(result.all())

            for rel in relationships:
                reason = None
                if rel.type != DEPENDS_ON:
                    reason = f"unsupported relationship type '{rel.type}'"
                elif rel.start not in ids:
                    reason = f"start entity '{rel.start}' not found"
                elif rel.end not in ids:
                    reason = f"end entity '{rel.end}' not found"
                elif rel.start == rel.end:
                    reason = "self-referencing relationship"
                elif (ids[rel.start], ids[rel.end]) in existing:
                    reason = "duplicate relationship"
                if reason:
                    failures.append(RelationshipFailure(rel, reason))
                    continue

                pair = (ids[rel.start], ids[rel.end])
                existing.add(pair)
                session.add(Dependency(
                    dependent_id=pair[0],
                    dependency_id=pair[1],
                    position=int(rel.properties.get("position", 0)),
                    created_at=_parse_timestamp(rel.properties.get("created_at")),
                ))
            await session.flush()
        return failures

    @staticmethod
    def _entity_model(entity_type: str) -> type:
        try:
            return ENTITY_MODELS[entity_type]
        except KeyError:
            raise StorageError(f"Unknown entity type '{entity_type}'", "entity_model") from None


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value:
        return as_utc(datetime.fromisoformat(value))
    return utcnow()
