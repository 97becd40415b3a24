"""Background task scheduler: deletes expired lock rows.

Uses FastAPI's lifespan context to start/stop an asyncio background loop.
Expired rows never block anyone (acquisition replaces them), so this
loop only keeps the `migration_locks` table small.

Configuration:
    LOCK_CLEANUP_INTERVAL_SECONDS=300   (via .env)
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.config import settings
from app.database import async_session
from app.middleware.exceptions import TransientStoreError
from app.utils.cache import close_redis
from app.utils.locks import SqlLockManager

logger = logging.getLogger("adwizard.scheduler")


async def cleanup_expired_locks(locks: SqlLockManager | None = None) -> int:
    """Run one cleanup pass; returns the number of rows removed."""
    locks = locks or SqlLockManager(async_session)
    removed = await locks.cleanup_expired()
    if removed:
        logger.info("Removed %d expired lock(s)", removed)
    return removed


async def _scheduler_loop(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await cleanup_expired_locks()
        except TransientStoreError:
            logger.warning("Lock cleanup skipped: store unavailable")
        except Exception:
            logger.exception("Unhandled error in lock cleanup")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: start the cleanup loop on startup, cancel on shutdown."""
    task = asyncio.create_task(_scheduler_loop(settings.lock_cleanup_interval_seconds))
    logger.info("Lock cleanup scheduler started")
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await close_redis()
        logger.info("Lock cleanup scheduler stopped")
