"""
Runtime configuration for Taskgraph.

Settings are grouped by component and loaded from ``TASKGRAPH_*``
environment variables with defaults suitable for local development.
"""

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


class ValidationSettings(BaseModel):
    """Limits enforced by the dependency/hierarchy validator."""
    max_dependency_depth: int = 100
    max_hierarchy_depth: int = 7
    max_children: int = 100
    max_dependencies: int = 50


class CacheSettings(BaseModel):
    """Task cache sizing and memory watchdog."""
    max_entries: int = 1000
    max_bytes: int = 50 * 1024 * 1024
    ttl_seconds: float = 300.0
    eviction_fraction: float = 0.1
    memory_check_interval: float = 60.0
    high_water_mark: float = 0.9
    cleanup_cooldown: float = 300.0


class BatchSettings(BaseModel):
    """Dependency-aware batch processor."""
    chunk_size: int = 50
    concurrency: int = 4
    max_attempts: int = 3
    retry_delay: float = 0.5
    backoff_factor: float = 2.0
    max_retry_delay: float = 10.0


class TransactionSettings(BaseModel):
    """Transaction coordinator limits."""
    max_operations: int = 1000
    timeout_seconds: float = 30.0


class BackupSettings(BaseModel):
    """Backup/restore engine."""
    backup_root: Path = Path("backups")
    prefix: str = "taskgraph-backup"
    max_backups: int = 10
    relationship_batch_size: int = 500


class Settings(BaseModel):
    """Application settings."""
    database_url: str = "sqlite+aiosqlite:///taskgraph.db"
    debug: bool = False
    log_level: str | None = None
    log_json: bool = False

    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    transaction: TransactionSettings = Field(default_factory=TransactionSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from the environment."""
        env = os.environ
        return cls(
            database_url=env.get("TASKGRAPH_DATABASE_URL", "sqlite+aiosqlite:///taskgraph.db"),
            debug=_env_bool("TASKGRAPH_DEBUG", default=False),
            log_level=env.get("TASKGRAPH_LOG_LEVEL") or None,
            log_json=_env_bool("TASKGRAPH_LOG_JSON", default=False),
            validation=ValidationSettings(
                max_dependency_depth=int(env.get("TASKGRAPH_MAX_DEPENDENCY_DEPTH", "100")),
                max_hierarchy_depth=int(env.get("TASKGRAPH_MAX_HIERARCHY_DEPTH", "7")),
                max_children=int(env.get("TASKGRAPH_MAX_CHILDREN", "100")),
                max_dependencies=int(env.get("TASKGRAPH_MAX_DEPENDENCIES", "50")),
            ),
            cache=CacheSettings(
                max_entries=int(env.get("TASKGRAPH_CACHE_MAX_ENTRIES", "1000")),
                max_bytes=int(env.get("TASKGRAPH_CACHE_MAX_BYTES", str(50 * 1024 * 1024))),
                ttl_seconds=float(env.get("TASKGRAPH_CACHE_TTL_SECONDS", "300")),
                memory_check_interval=float(env.get("TASKGRAPH_CACHE_CHECK_INTERVAL", "60")),
                high_water_mark=float(env.get("TASKGRAPH_CACHE_HIGH_WATER_MARK", "0.9")),
                cleanup_cooldown=float(env.get("TASKGRAPH_CACHE_CLEANUP_COOLDOWN", "300")),
            ),
            batch=BatchSettings(
                chunk_size=int(env.get("TASKGRAPH_BATCH_CHUNK_SIZE", "50")),
                concurrency=int(env.get("TASKGRAPH_BATCH_CONCURRENCY", "4")),
                max_attempts=int(env.get("TASKGRAPH_BATCH_MAX_ATTEMPTS", "3")),
                retry_delay=float(env.get("TASKGRAPH_BATCH_RETRY_DELAY", "0.5")),
            ),
            transaction=TransactionSettings(
                max_operations=int(env.get("TASKGRAPH_TX_MAX_OPERATIONS", "1000")),
                timeout_seconds=float(env.get("TASKGRAPH_TX_TIMEOUT_SECONDS", "30")),
            ),
            backup=BackupSettings(
                backup_root=Path(env.get("TASKGRAPH_BACKUP_ROOT", "backups")),
                max_backups=int(env.get("TASKGRAPH_MAX_BACKUPS", "10")),
                relationship_batch_size=int(env.get("TASKGRAPH_BACKUP_REL_BATCH_SIZE", "500")),
            ),
        )


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache
def get_settings() -> Settings:
    """Settings loaded once from the environment."""
    return Settings.from_env()
