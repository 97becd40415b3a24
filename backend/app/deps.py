"""FastAPI providers for the wizard services.

Every provider builds on `get_session_factory`, so overriding that one
dependency points the whole stack at another database.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.database import get_session_factory
from app.services.content_generation import ContentGenerationClient, UsageGate
from app.services.migration import MigrationCoordinator, MigrationQueue
from app.services.progress_store import SqlProgressStore
from app.services.versioned_save import VersionedSaveEngine
from app.utils.locks import SqlLockManager

# One per process: de-duplicates concurrent migrations of the same session
migration_queue = MigrationQueue(maxsize=settings.migration_queue_size)


def get_store(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SqlProgressStore:
    return SqlProgressStore(factory)


def get_lock_manager(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SqlLockManager:
    return SqlLockManager(factory)


def get_save_engine(store: SqlProgressStore = Depends(get_store)) -> VersionedSaveEngine:
    return VersionedSaveEngine(
        store,
        max_retries=settings.save_max_retries,
        base_delay=settings.save_retry_base_delay,
    )


def get_migration_coordinator(
    store: SqlProgressStore = Depends(get_store),
    locks: SqlLockManager = Depends(get_lock_manager),
) -> MigrationCoordinator:
    return MigrationCoordinator(
        store,
        locks,
        max_retries=settings.migration_max_retries,
        retry_delay=settings.migration_retry_delay,
        lock_ttl=settings.migration_lock_ttl_seconds,
        use_atomic=settings.use_atomic_migration,
        backup_enabled=settings.migration_backup_enabled,
    )


def get_migration_queue() -> MigrationQueue:
    return migration_queue


def get_content_client() -> ContentGenerationClient | None:
    if not settings.content_generation_url:
        return None
    return ContentGenerationClient(
        settings.content_generation_url,
        api_key=settings.content_generation_api_key,
        timeout=settings.content_generation_timeout,
    )


def get_usage_gate(store: SqlProgressStore = Depends(get_store)) -> UsageGate:
    return UsageGate(store)
