"""Management CLI for wizard operations.

Usage:
    python -m app.cli cleanup-locks                          # Delete expired lock rows
    python -m app.cli migrate-session <user_id> <session_id> # Retry a failed migration
"""

import asyncio
import sys

from app.config import settings
from app.database import async_session
from app.middleware.exceptions import FatalMigrationError
from app.services.migration import MigrationCoordinator
from app.services.progress_store import SqlProgressStore
from app.services.scheduler import cleanup_expired_locks
from app.services.session import SessionContext
from app.utils.locks import SqlLockManager


async def cleanup_locks() -> None:
    removed = await cleanup_expired_locks(SqlLockManager(async_session))
    print(f"  Removed {removed} expired lock(s)")


async def migrate_session(user_id: str, session_id: str) -> int:
    """Run one migration by hand; returns the process exit code."""
    coordinator = MigrationCoordinator(
        SqlProgressStore(async_session),
        SqlLockManager(async_session),
        max_retries=settings.migration_max_retries,
        retry_delay=settings.migration_retry_delay,
        lock_ttl=settings.migration_lock_ttl_seconds,
        use_atomic=settings.use_atomic_migration,
        backup_enabled=settings.migration_backup_enabled,
    )
    try:
        result = await coordinator.migrate(SessionContext(user_id=user_id, session_id=session_id))
    except FatalMigrationError as exc:
        print(f"  FAILED after {exc.attempts} attempt(s): {exc.message}")
        return 1

    print(f"  {result.status.value}")
    if result.record is not None:
        print(f"  step={result.record.current_step} version={result.record.version}")
    return 0


def main(argv: list[str]) -> int:
    cmd = argv[1] if len(argv) > 1 else ""
    if cmd == "cleanup-locks":
        asyncio.run(cleanup_locks())
        return 0
    if cmd == "migrate-session" and len(argv) == 4:
        return asyncio.run(migrate_session(argv[2], argv[3]))
    print("Usage: python -m app.cli [cleanup-locks | migrate-session <user_id> <session_id>]")
    return 2


if __name__ == "__main__":
    sys.exit(main(sys.argv))
