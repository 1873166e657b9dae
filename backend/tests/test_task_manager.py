"""
Test the task manager end to end over SQLite.
"""

from datetime import timedelta

import pytest

from taskgraph.events import EventType
from taskgraph.exceptions import (
    BulkOperationError,
    ConcurrencyError,
    CycleDetectedError,
    DuplicateTaskError,
    InvalidPathError,
    NotFoundError,
    ValidationError,
)
from taskgraph.models import TaskStatus
from taskgraph.schemas import TaskCreate, TaskUpdate

from conftest import make_task


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_and_get(self, manager):
        created = await manager.create_task(TaskCreate(path="web", name="Website"))

        assert created.version == 1
        fetched = await manager.get_task("web")
        assert fetched.name == "Website"
        assert fetched.status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_create_adds_to_parent_subtasks(self, manager):
        await manager.create_task(TaskCreate(path="web", name="Website"))
        await manager.create_task(TaskCreate(path="web/api", name="API", parent_path="web"))

        parent = await manager.get_task("web")
        assert parent.subtasks == ["web/api"]
        assert parent.version == 2
        assert [t.path for t in await manager.get_subtasks("web")] == ["web/api"]

    @pytest.mark.asyncio
    async def test_timestamps_read_back_as_utc(self, manager):
        created = await manager.create_task(TaskCreate(path="a", name="A"))
        manager.clear_caches()

        fetched = await manager.get_task("a")

        assert fetched.created_at.utcoffset() == timedelta(0)
        assert fetched.created_at == created.created_at

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, manager):
        await manager.create_task(TaskCreate(path="a", name="A"))
        with pytest.raises(DuplicateTaskError):
            await manager.create_task(TaskCreate(path="a", name="A again"))

    @pytest.mark.asyncio
    async def test_invalid_path_rejected(self, manager):
        with pytest.raises(InvalidPathError):
            await manager.create_task(TaskCreate(path="has space", name="x"))

    @pytest.mark.asyncio
    async def test_too_deep_path_rejected(self, manager):
        path = "/".join(f"s{i}" for i in range(12))

        with pytest.raises(InvalidPathError):
            await manager.create_task(TaskCreate(path=path, name="deep"))
        assert await manager.get_task(path) is None

    @pytest.mark.asyncio
    async def test_missing_dependency_rejected(self, manager):
        with pytest.raises(ValidationError):
            await manager.create_task(TaskCreate(path="b", name="B", dependencies=["a"]))
        assert await manager.get_task("b") is None

    @pytest.mark.asyncio
    async def test_create_publishes_event(self, manager):
        received = []
        manager.events.subscribe(received.append, EventType.TASK_CREATED)

        await manager.create_task(TaskCreate(path="a", name="A"))

        assert received[0].payload["path"] == "a"


class TestUpdate:

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, manager):
        await manager.create_task(TaskCreate(path="a", name="A"))

        updated = await manager.update_task("a", TaskUpdate(status=TaskStatus.IN_PROGRESS))

        assert updated.version == 2
        assert updated.status == TaskStatus.IN_PROGRESS
        assert updated.name == "A"

    @pytest.mark.asyncio
    async def test_stale_expected_version(self, manager):
        await manager.create_task(TaskCreate(path="a", name="A"))
        await manager.update_task("a", TaskUpdate(name="A2"), expected_version=1)

        with pytest.raises(ConcurrencyError):
            await manager.update_task("a", TaskUpdate(name="A3"), expected_version=1)

    @pytest.mark.asyncio
    async def test_update_introducing_cycle_rejected(self, manager):
        await manager.create_task(TaskCreate(path="a", name="A"))
        await manager.create_task(TaskCreate(path="b", name="B", dependencies=["a"]))
        await manager.create_task(TaskCreate(path="c", name="C", dependencies=["b"]))

        with pytest.raises(CycleDetectedError) as exc_info:
            await manager.update_task("a", TaskUpdate(dependencies=["c"]))

        assert exc_info.value.cycle == ["a", "c", "b", "a"]
        assert (await manager.get_task("a")).dependencies == []

    @pytest.mark.asyncio
    async def test_reparenting_moves_subtask_entry(self, manager):
        await manager.create_task(TaskCreate(path="p1", name="P1"))
        await manager.create_task(TaskCreate(path="p2", name="P2"))
        await manager.create_task(TaskCreate(path="child", name="C", parent_path="p1"))

        await manager.update_task("child", TaskUpdate(parent_path="p2"))

        assert (await manager.get_task("p1")).subtasks == []
        assert (await manager.get_task("p2")).subtasks == ["child"]

    @pytest.mark.asyncio
    async def test_update_missing_task(self, manager):
        with pytest.raises(NotFoundError):
            await manager.update_task("ghost", TaskUpdate(name="x"))


class TestDelete:

    @pytest.mark.asyncio
    async def test_recursive_delete_cleans_references(self, manager):
        await manager.create_task(TaskCreate(path="root", name="Root"))
        await manager.create_task(TaskCreate(path="root/a", name="A", parent_path="root"))
        await manager.create_task(TaskCreate(path="root/a/x", name="X", parent_path="root/a"))
        await manager.create_task(TaskCreate(path="other", name="O", dependencies=["root/a/x"]))

        deleted = await manager.delete_task("root/a")

        assert deleted == ["root/a/x", "root/a"]
        assert await manager.get_task("root/a/x") is None
        assert (await manager.get_task("root")).subtasks == []
        other = await manager.get_task("other")
        assert other.dependencies == []
        assert other.version == 2

    @pytest.mark.asyncio
    async def test_delete_missing(self, manager):
        with pytest.raises(NotFoundError):
            await manager.delete_task("ghost")


class TestQueries:

    @pytest.mark.asyncio
    async def test_pattern_status_and_listing(self, manager):
        for path in ("web", "web/api", "web/ui", "ops"):
            parent = "web" if path.startswith("web/") else None
            await manager.create_task(TaskCreate(path=path, name=path, parent_path=parent))
        await manager.update_task("web/ui", TaskUpdate(status=TaskStatus.IN_PROGRESS))

        assert [t.path for t in await manager.get_tasks_by_pattern("web/*")] == ["web/api", "web/ui"]
        assert [t.path for t in await manager.get_tasks_by_status(TaskStatus.IN_PROGRESS)] == ["web/ui"]
        assert [t.path for t in await manager.list_tasks(limit=2, offset=1)] == ["web", "web/api"]

    @pytest.mark.asyncio
    async def test_cache_miss_after_clear_repopulates_from_storage(self, manager):
        await manager.create_task(TaskCreate(path="a", name="A"))

        manager.clear_caches()
        assert "a" not in manager.cache

        assert (await manager.get_task("a")).name == "A"
        assert "a" in manager.cache

    @pytest.mark.asyncio
    async def test_sort_by_dependencies(self, manager):
        tasks = [
            make_task("c", dependencies=["b"]),
            make_task("b", dependencies=["a"]),
            make_task("a"),
        ]
        assert [t.path for t in manager.sort_by_dependencies(tasks)] == ["a", "b", "c"]


class TestBulkCreate:

    @pytest.mark.asyncio
    async def test_forward_references_created_in_order(self, manager):
        items = [
            TaskCreate(path="deploy", name="Deploy", dependencies=["build"]),
            TaskCreate(path="build", name="Build", dependencies=["design"]),
            TaskCreate(path="design", name="Design"),
        ]

        result = await manager.bulk_create_tasks(items)

        assert result.order == ["design", "build", "deploy"]
        assert result.processed_count == 3
        assert (await manager.get_task("deploy")).dependencies == ["build"]

    @pytest.mark.asyncio
    async def test_parent_and_child_in_one_batch(self, manager):
        items = [
            TaskCreate(path="web", name="Website"),
            TaskCreate(path="web/api", name="API", parent_path="web"),
        ]

        result = await manager.bulk_create_tasks(items)

        assert result.processed_count == 2
        assert result.order == ["web", "web/api"]
        assert (await manager.get_task("web")).subtasks == ["web/api"]

    @pytest.mark.asyncio
    async def test_child_listed_before_parent(self, manager):
        items = [
            TaskCreate(path="web/api/auth", name="Auth", parent_path="web/api"),
            TaskCreate(path="web/api", name="API", parent_path="web"),
            TaskCreate(path="web", name="Website"),
        ]

        result = await manager.bulk_create_tasks(items)

        assert result.order == ["web", "web/api", "web/api/auth"]
        assert (await manager.get_task("web/api")).subtasks == ["web/api/auth"]

    @pytest.mark.asyncio
    async def test_failed_parent_blocks_children(self, manager):
        await manager.create_task(TaskCreate(path="web", name="Existing"))
        items = [
            TaskCreate(path="web", name="Duplicate"),
            TaskCreate(path="web/api", name="API", parent_path="web"),
        ]

        with pytest.raises(BulkOperationError) as exc_info:
            await manager.bulk_create_tasks(items)

        statuses = {e["identity"]: e["status"] for e in exc_info.value.errors}
        assert statuses == {"web": "FAILED", "web/api": "BLOCKED"}
        assert await manager.get_task("web/api") is None

    @pytest.mark.asyncio
    async def test_cycle_in_batch_creates_nothing(self, manager):
        items = [
            TaskCreate(path="a", name="A", dependencies=["b"]),
            TaskCreate(path="b", name="B", dependencies=["a"]),
        ]

        with pytest.raises(ValidationError):
            await manager.bulk_create_tasks(items)

        assert await manager.storage.count() == 0

    @pytest.mark.asyncio
    async def test_partial_failure_reports_counts(self, manager):
        await manager.create_task(TaskCreate(path="taken", name="Taken"))
        items = [
            TaskCreate(path="taken", name="Duplicate"),
            TaskCreate(path="after", name="After", dependencies=["taken"]),
            TaskCreate(path="free", name="Free"),
        ]

        with pytest.raises(BulkOperationError) as exc_info:
            await manager.bulk_create_tasks(items)

        error = exc_info.value
        assert error.processed_count == 1
        assert error.failed_count == 2
        assert {e["identity"] for e in error.errors} == {"taken", "after"}
        assert await manager.get_task("free") is not None


class TestHousekeeping:

    @pytest.mark.asyncio
    async def test_run_maintenance(self, manager):
        await manager.create_task(TaskCreate(path="a", name="A"))
        assert await manager.run_maintenance() is True

    @pytest.mark.asyncio
    async def test_run_maintenance_never_raises(self, manager, monkeypatch):
        async def broken():
            raise RuntimeError("disk full")

        monkeypatch.setattr(manager.storage, "vacuum", broken)

        assert await manager.run_maintenance() is False

    @pytest.mark.asyncio
    async def test_backup_round_trip_through_manager(self, manager):
        await manager.create_task(TaskCreate(path="a", name="A"))
        await manager.create_task(TaskCreate(path="b", name="B", dependencies=["a"]))
        snapshot = await manager.backup.export()

        await manager.delete_task("a")
        await manager.backup.import_snapshot(snapshot)

        assert (await manager.get_task("b")).dependencies == ["a"]
