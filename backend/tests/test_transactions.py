"""
Test the transaction coordinator against real SQL storage.
"""

import asyncio

import pytest

from taskgraph.events import EventType
from taskgraph.exceptions import (
    ConcurrencyError,
    NotFoundError,
    TransactionError,
    TransactionFinalizedError,
)
from taskgraph.models import TaskStatus
from taskgraph.services.transactions import TransactionState

from conftest import make_task


class TestCommit:

    @pytest.mark.asyncio
    async def test_commit_creates_tasks_with_version_one(self, coordinator, storage):
        tx = coordinator.begin()
        await tx.add_save(make_task("a"))
        await tx.add_save(make_task("b", dependencies=["a"]))

        written = await tx.commit()

        assert [t.path for t in written] == ["a", "b"]
        stored = await storage.get("b")
        assert stored.version == 1
        assert stored.dependencies == ["a"]
        assert tx.state == TransactionState.COMMITTED

    @pytest.mark.asyncio
    async def test_version_bumps_once_per_transaction(self, coordinator, storage):
        await storage.create(make_task("a"))

        tx = coordinator.begin()
        current = await tx.get("a")
        await tx.add_save(current.model_copy(update={"name": "first"}))
        await tx.add_save(current.model_copy(update={"name": "second"}))
        await tx.commit()

        stored = await storage.get("a")
        assert stored.version == 2
        assert stored.name == "second"

    @pytest.mark.asyncio
    async def test_created_at_preserved_on_update(self, coordinator, storage):
        original = await storage.create(make_task("a"))

        async with coordinator.transaction() as tx:
            await tx.add_save(make_task("a", name="renamed"))

        stored = await storage.get("a")
        assert stored.created_at == original.created_at
        assert stored.updated_at >= original.updated_at

    @pytest.mark.asyncio
    async def test_commit_writes_through_cache_and_publishes(self, coordinator, cache, events):
        received = []
        events.subscribe(received.append)

        async with coordinator.transaction() as tx:
            await tx.add_save(make_task("a"))

        assert cache.get("a").version == 1
        assert [e.type for e in received] == [EventType.TASK_CREATED]
        assert received[0].payload["path"] == "a"

    @pytest.mark.asyncio
    async def test_delete(self, coordinator, storage, cache, events):
        await storage.create(make_task("a"))
        cache.set(await storage.get("a"))
        received = []
        events.subscribe(received.append, EventType.TASK_DELETED)

        async with coordinator.transaction() as tx:
            await tx.add_delete("a")

        assert await storage.get("a") is None
        assert cache.get("a") is None
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_delete_missing_raises(self, coordinator):
        tx = coordinator.begin()
        with pytest.raises(NotFoundError):
            await tx.add_delete("ghost")
        await tx.rollback()

    @pytest.mark.asyncio
    async def test_create_then_delete_in_one_transaction_is_a_no_op(self, coordinator, storage):
        async with coordinator.transaction() as tx:
            await tx.add_save(make_task("temp"))
            await tx.add_delete("temp")

        assert await storage.get("temp") is None

    @pytest.mark.asyncio
    async def test_empty_commit(self, coordinator):
        tx = coordinator.begin()
        assert tx.is_empty()
        assert await tx.commit() == []


class TestRollback:

    @pytest.mark.asyncio
    async def test_rollback_leaves_storage_unchanged(self, coordinator, storage):
        """
        Scenario: begin; save X; save Y; rollback
        Expected: storage is exactly as before
        """
        await storage.create(make_task("x", status=TaskStatus.PENDING))
        before = await storage.get("x")

        tx = coordinator.begin()
        await tx.add_save(before.model_copy(update={"status": TaskStatus.IN_PROGRESS}))
        await tx.add_save(make_task("y"))
        await tx.rollback()

        assert await storage.get("x") == before
        assert await storage.get("y") is None
        assert await storage.count() == 1
        assert tx.state == TransactionState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_rollback_invalidates_cache(self, coordinator, storage, cache):
        await storage.create(make_task("x"))
        cache.set(await storage.get("x"))

        tx = coordinator.begin()
        await tx.add_save(make_task("x", name="changed"))
        await tx.rollback()

        assert "x" not in cache

    @pytest.mark.asyncio
    async def test_context_manager_rolls_back_on_error(self, coordinator, storage):
        with pytest.raises(RuntimeError):
            async with coordinator.transaction() as tx:
                await tx.add_save(make_task("a"))
                raise RuntimeError("caller bailed out")

        assert await storage.get("a") is None
        assert coordinator.active is None

    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back_every_write(self, coordinator, storage):
        """
        Scenario: first write succeeds, second references a missing dependency
        Expected: TransactionError and neither write persisted
        """
        tx = coordinator.begin()
        await tx.add_save(make_task("ok"))
        await tx.add_save(make_task("broken", dependencies=["ghost"]))

        with pytest.raises(TransactionError):
            await tx.commit()

        assert await storage.get("ok") is None
        assert tx.state == TransactionState.ROLLED_BACK
        assert coordinator.active is None

    @pytest.mark.asyncio
    async def test_version_conflict_surfaces_as_concurrency_error(self, coordinator, storage):
        await storage.create(make_task("a"))

        tx = coordinator.begin()
        current = await tx.get("a")
        await tx.add_save(current.model_copy(update={"name": "mine"}))

        # Someone else commits first
        theirs = await storage.get("a")
        await storage.update(theirs.model_copy(update={"version": 2, "name": "theirs"}), expected_version=1)

        with pytest.raises(ConcurrencyError):
            await tx.commit()

        stored = await storage.get("a")
        assert stored.name == "theirs"
        assert stored.version == 2

    @pytest.mark.asyncio
    async def test_cancelled_commit_leaves_coordinator_usable(self, coordinator, storage, monkeypatch):
        async def cancelled(task):
            raise asyncio.CancelledError()

        monkeypatch.setattr(storage, "create", cancelled)

        tx = coordinator.begin()
        await tx.add_save(make_task("a"))
        with pytest.raises(asyncio.CancelledError):
            await tx.commit()

        assert tx.state == TransactionState.ROLLED_BACK
        assert coordinator.active is None
        assert not storage.in_transaction

        monkeypatch.undo()
        async with coordinator.transaction() as retry:
            await retry.add_save(make_task("a"))
        assert (await storage.get("a")).version == 1

    @pytest.mark.asyncio
    async def test_pre_images_restored_when_storage_rollback_fails(
        self, coordinator, storage, monkeypatch
    ):
        """
        Scenario: writes reach storage, commit then errors, the storage
        rollback fails too, and restoring "b" fails
        Expected: "a" and "c" are back at their pre-images; the error
        names "b"
        """
        await storage.create(make_task("a", name="A"))
        await storage.create(make_task("b", name="B"))
        real_commit = storage.commit
        real_put = storage.put

        async def commit_then_fail():
            await real_commit()
            raise RuntimeError("connection lost after commit")

        async def broken_rollback():
            raise RuntimeError("rollback unavailable")

        async def put(task):
            if task.path == "b":
                raise RuntimeError("disk full")
            return await real_put(task)

        monkeypatch.setattr(storage, "commit", commit_then_fail)
        monkeypatch.setattr(storage, "rollback", broken_rollback)
        monkeypatch.setattr(storage, "put", put)

        tx = coordinator.begin()
        for path in ("a", "b"):
            current = await tx.get(path)
            await tx.add_save(current.model_copy(update={"name": f"{path} changed"}))
        await tx.add_save(make_task("c"))

        with pytest.raises(TransactionError) as exc_info:
            await tx.commit()

        assert set(exc_info.value.failures) == {"b"}
        assert "disk full" in exc_info.value.failures["b"]
        restored = await storage.get("a")
        assert (restored.name, restored.version) == ("A", 1)
        assert await storage.get("c") is None
        assert (await storage.get("b")).name == "b changed"
        assert tx.state == TransactionState.ROLLED_BACK
        assert coordinator.active is None


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_nested_begin_fails(self, coordinator):
        tx = coordinator.begin()
        with pytest.raises(TransactionError):
            coordinator.begin()
        await tx.rollback()

        # Once finalized a new transaction can start
        coordinator.begin()

    @pytest.mark.asyncio
    async def test_operations_after_commit_raise(self, coordinator):
        tx = coordinator.begin()
        await tx.add_save(make_task("a"))
        await tx.commit()

        with pytest.raises(TransactionFinalizedError):
            await tx.add_save(make_task("b"))
        with pytest.raises(TransactionFinalizedError):
            await tx.commit()
        with pytest.raises(TransactionFinalizedError):
            await tx.rollback()

    @pytest.mark.asyncio
    async def test_affected_identities_in_first_touch_order(self, coordinator, storage):
        await storage.create(make_task("a"))
        tx = coordinator.begin()
        await tx.add_save(make_task("b"))
        await tx.add_delete("a")
        await tx.add_save(make_task("b", name="again"))

        assert tx.affected_identities() == ["b", "a"]
        assert tx.pre_images["b"] is None
        assert tx.pre_images["a"].path == "a"
        await tx.rollback()

    @pytest.mark.asyncio
    async def test_operation_limit(self, coordinator):
        coordinator.settings = coordinator.settings.model_copy(update={"max_operations": 2})
        tx = coordinator.begin()
        await tx.add_save(make_task("a"))
        await tx.add_save(make_task("b"))

        with pytest.raises(TransactionError):
            await tx.add_save(make_task("c"))
        await tx.rollback()
