"""
In-memory task cache.

LRU over task snapshots with entry-count and byte ceilings, optional
per-entry TTL, and a watchdog that clears the cache under memory pressure.
The cache never talks to storage; read-through and write-through are the
task manager's job.
"""

import asyncio
import contextlib
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from taskgraph.config import CacheSettings
from taskgraph.events import EventBus, EventType
from taskgraph.logging_config import get_logger
from taskgraph.schemas import TaskRead

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    task: TaskRead
    inserted_at: float
    last_access: float
    expires_at: float | None
    size: int


@dataclass
class CacheMetrics:
    hit_rate: float
    entry_count: int
    memory_estimate: int
    hits: int
    misses: int
    evictions: int
    forced_cleanups: int


def estimate_size(task: TaskRead) -> int:
    """Approximate footprint of a snapshot: its JSON length plus the key."""
    return len(task.model_dump_json()) + len(task.path)


class TaskCache:
    def __init__(
        self,
        settings: CacheSettings | None = None,
        *,
        events: EventBus | None = None,
        memory_sampler: Callable[[], int] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or CacheSettings()
        self.events = events
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._bytes = 0
        self._clock = clock
        self._memory_sampler = memory_sampler or (lambda: self._bytes)
        self._last_forced_cleanup: float | None = None
        self._watchdog: asyncio.Task | None = None

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._forced_cleanups = 0

    # ---- core operations ----

    def get(self, path: str) -> TaskRead | None:
        entry = self._entries.get(path)
        if entry is None:
            self._misses += 1
            return None

        now = self._clock()
        if entry.expires_at is not None and now >= entry.expires_at:
            self._remove(path)
            self._misses += 1
            return None

        self._entries.move_to_end(path)
        entry.last_access = now
        self._hits += 1
        return entry.task.model_copy(deep=True)

    def set(self, task: TaskRead, ttl: float | None = None) -> None:
        """Insert or replace a snapshot. ``ttl`` defaults to the configured TTL."""
        if task.path in self._entries:
            self._remove(task.path)
        elif len(self._entries) >= self.settings.max_entries:
            self._evict_oldest()

        ttl = self.settings.ttl_seconds if ttl is None else ttl
        now = self._clock()
        size = estimate_size(task)
        self._entries[task.path] = CacheEntry(
            task=task.model_copy(deep=True),
            inserted_at=now,
            last_access=now,
            expires_at=now + ttl if ttl and ttl > 0 else None,
            size=size,
        )
        self._bytes += size

        while self._bytes > self.settings.max_bytes and len(self._entries) > 1:
            self._evict_oldest()

    def delete(self, path: str) -> bool:
        if path not in self._entries:
            return False
        self._remove(path)
        return True

    def clear(self) -> None:
        self._entries.clear()
        self._bytes = 0

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [
            path for path, entry in self._entries.items()
            if entry.expires_at is not None and now >= entry.expires_at
        ]
        for path in expired:
            self._remove(path)
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    @property
    def memory_estimate(self) -> int:
        return self._bytes

    def metrics(self) -> CacheMetrics:
        lookups = self._hits + self._misses
        return CacheMetrics(
            hit_rate=self._hits / lookups if lookups else 0.0,
            entry_count=len(self._entries),
            memory_estimate=self._bytes,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            forced_cleanups=self._forced_cleanups,
        )

    def _remove(self, path: str) -> None:
        entry = self._entries.pop(path)
        self._bytes -= entry.size

    def _evict_oldest(self) -> None:
        count = max(1, int(len(self._entries) * self.settings.eviction_fraction))
        for _ in range(min(count, len(self._entries))):
            path, entry = self._entries.popitem(last=False)
            self._bytes -= entry.size
            self._evictions += 1
            logger.debug(f"Evicted {path} from cache")

    # ---- memory watchdog ----

    def check_memory_pressure(self) -> bool:
        """
        Clear the cache if sampled usage crossed the high-water mark and the
        cooldown since the last forced cleanup has elapsed.

        Returns True if a cleanup ran.
        """
        usage = self._memory_sampler()
        threshold = self.settings.high_water_mark * self.settings.max_bytes
        if usage < threshold:
            return False

        now = self._clock()
        if (
            self._last_forced_cleanup is not None
            and now - self._last_forced_cleanup < self.settings.cleanup_cooldown
        ):
            logger.debug("Memory pressure detected but cleanup is cooling down")
            return False

        cleared = len(self._entries)
        self.clear()
        self._forced_cleanups += 1
        self._last_forced_cleanup = now
        logger.warning(
            f"Memory pressure: usage {usage} >= {threshold:.0f} bytes, "
            f"cleared {cleared} cache entries"
        )
        if self.events is not None:
            self.events.emit(
                EventType.MEMORY_PRESSURE,
                usage=usage,
                threshold=threshold,
                entries_cleared=cleared,
            )
        return True

    @property
    def running(self) -> bool:
        return self._watchdog is not None and not self._watchdog.done()

    async def start(self) -> None:
        """Start the watchdog on the running event loop."""
        if self.running:
            return
        self._watchdog = asyncio.create_task(self._watch(), name="taskgraph-cache-watchdog")
        logger.debug(
            f"Cache watchdog started (interval={self.settings.memory_check_interval}s)"
        )

    async def _watch(self) -> None:
        while True:
            await asyncio.sleep(self.settings.memory_check_interval)
            try:
                self.purge_expired()
                self.check_memory_pressure()
            except Exception:
                logger.exception("Cache watchdog check failed")

    async def close(self) -> None:
        """Stop the watchdog and drop all entries."""
        if self._watchdog is not None:
            self._watchdog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watchdog
            self._watchdog = None
        self.clear()

    async def __aenter__(self) -> "TaskCache":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
