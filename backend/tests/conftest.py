"""
Pytest configuration and fixtures for Taskgraph tests.

Every test gets its own SQLite database file and backup root under
pytest's ``tmp_path``.
"""

import pytest
import pytest_asyncio

from taskgraph.config import BackupSettings, BatchSettings, CacheSettings, Settings
from taskgraph.events import EventBus
from taskgraph.models import utcnow
from taskgraph.schemas import TaskRead
from taskgraph.services.cache import TaskCache
from taskgraph.services.task_manager import create_task_manager
from taskgraph.services.transactions import TransactionCoordinator
from taskgraph.storage.sql import SqlStorage


def make_task(path: str, **fields) -> TaskRead:
    """Snapshot with sensible defaults for tests."""
    now = utcnow()
    fields.setdefault("name", path.rsplit("/", 1)[-1])
    fields.setdefault("created_at", now)
    fields.setdefault("updated_at", now)
    return TaskRead(path=path, **fields)


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a throwaway database and backup root."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        cache=CacheSettings(memory_check_interval=3600),
        batch=BatchSettings(retry_delay=0, chunk_size=10),
        backup=BackupSettings(backup_root=tmp_path / "backups", max_backups=3),
    )


@pytest_asyncio.fixture(scope="function")
async def storage(settings):
    """SQL storage with all tables created."""
    storage = await SqlStorage.from_settings(settings)
    yield storage
    await storage.close()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def cache(settings, events):
    return TaskCache(settings.cache, events=events)


@pytest.fixture
def coordinator(storage, cache, events, settings):
    return TransactionCoordinator(storage, cache=cache, events=events, settings=settings.transaction)


@pytest_asyncio.fixture(scope="function")
async def manager(settings):
    """Fully wired task manager over a fresh database."""
    manager = await create_task_manager(settings)
    yield manager
    await manager.close()
