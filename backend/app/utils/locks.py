"""Expiring lock rows: mutual exclusion across workers and processes.

Acquiring a lock is a single conditional INSERT guarded by the unique
(user_id, lock_type) constraint; no in-memory mutex is trusted.  Rows past
`expires_at` count as abandoned and are replaced by the next acquirer.

Each acquisition gets a random token.  Release, renewal and verification
only match the row carrying that token, so a holder whose lease expired
cannot delete or extend its successor's lock.  Holders that are about to
commit call `verify()` first; a False result means the lease was lost.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Protocol, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.middleware.exceptions import LockContention, TransientStoreError
from app.models.migration_lock import MigrationLock
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIGRATION_LOCK = "wizard_migration"
AD_GENERATION_LOCK = "ad_generation"


# ── Data structures ────────────────────────────────────────────


@dataclass(frozen=True)
class LockHandle:
    """Proof of acquisition returned to the holder."""
    owner_id: str
    lock_type: str
    token: str
    expires_at: datetime
    metadata: dict = field(default_factory=dict)


class LockManager(Protocol):
    async def acquire(
        self, owner_id: str, lock_type: str, ttl: float, metadata: dict | None = None
    ) -> LockHandle | None: ...

    async def release(self, handle: LockHandle) -> None: ...

    async def is_held(self, owner_id: str, lock_type: str) -> bool: ...

    async def renew(self, handle: LockHandle, ttl: float) -> LockHandle | None: ...

    async def verify(self, handle: LockHandle) -> bool: ...

    async def cleanup_expired(self) -> int: ...


# ── SQL implementation ─────────────────────────────────────────


class SqlLockManager:
    """LockManager over the `migration_locks` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def acquire(
        self, owner_id: str, lock_type: str, ttl: float, metadata: dict | None = None
    ) -> LockHandle | None:
        """Insert a lock row; None when an unexpired row already exists."""
        now = self._clock()
        handle = LockHandle(
            owner_id=owner_id,
            lock_type=lock_type,
            token=str(uuid.uuid4()),
            expires_at=now + timedelta(seconds=ttl),
            metadata={"started_at": now.isoformat(), **(metadata or {})},
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    # Abandoned holder: its row no longer blocks anyone
                    await session.execute(
                        delete(MigrationLock).where(
                            MigrationLock.user_id == owner_id,
                            MigrationLock.lock_type == lock_type,
                            MigrationLock.expires_at <= now,
                        )
                    )
                    session.add(
                        MigrationLock(
                            user_id=owner_id,
                            lock_type=lock_type,
                            token=handle.token,
                            expires_at=handle.expires_at,
                            lock_metadata=handle.metadata,
                            created_at=now,
                        )
                    )
        except IntegrityError:
            logger.debug("Lock %s/%s is held by another owner", owner_id, lock_type)
            return None
        except SQLAlchemyError as exc:
            logger.warning("Lock acquisition failed for %s/%s: %s", owner_id, lock_type, exc)
            raise TransientStoreError() from exc

        logger.debug("Acquired lock %s/%s until %s", owner_id, lock_type, handle.expires_at)
        return handle

    async def release(self, handle: LockHandle) -> None:
        """Delete the holder's row.  Missing rows are fine."""
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(MigrationLock).where(
                        MigrationLock.user_id == handle.owner_id,
                        MigrationLock.lock_type == handle.lock_type,
                        MigrationLock.token == handle.token,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning(
                "Lock release failed for %s/%s: %s", handle.owner_id, handle.lock_type, exc
            )
            raise TransientStoreError() from exc

    async def is_held(self, owner_id: str, lock_type: str) -> bool:
        now = self._clock()
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(MigrationLock.id).where(
                        MigrationLock.user_id == owner_id,
                        MigrationLock.lock_type == lock_type,
                        MigrationLock.expires_at > now,
                    )
                )
                return result.first() is not None
        except SQLAlchemyError as exc:
            raise TransientStoreError() from exc

    async def renew(self, handle: LockHandle, ttl: float) -> LockHandle | None:
        """Extend an unexpired lease; None when the lease was already lost."""
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(MigrationLock)
                    .where(
                        MigrationLock.user_id == handle.owner_id,
                        MigrationLock.lock_type == handle.lock_type,
                        MigrationLock.token == handle.token,
                        MigrationLock.expires_at > now,
                    )
                    .values(expires_at=expires_at)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise TransientStoreError() from exc
        if result.rowcount == 0:
            return None
        return LockHandle(
            owner_id=handle.owner_id,
            lock_type=handle.lock_type,
            token=handle.token,
            expires_at=expires_at,
            metadata=handle.metadata,
        )

    async def verify(self, handle: LockHandle) -> bool:
        """True while the holder's own row exists and has not expired."""
        now = self._clock()
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(MigrationLock.id).where(
                        MigrationLock.user_id == handle.owner_id,
                        MigrationLock.lock_type == handle.lock_type,
                        MigrationLock.token == handle.token,
                        MigrationLock.expires_at > now,
                    )
                )
                return result.first() is not None
        except SQLAlchemyError as exc:
            raise TransientStoreError() from exc

    async def cleanup_expired(self) -> int:
        """Delete every expired lock row; returns the number removed."""
        now = self._clock()
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(MigrationLock).where(MigrationLock.expires_at <= now)
                )
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise TransientStoreError() from exc


# ── Helpers ────────────────────────────────────────────────────


async def run_atomically(
    locks: LockManager,
    owner_id: str,
    lock_type: str,
    operation: Callable[[], Awaitable[T]],
    ttl: float = 30,
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `operation` while holding (owner_id, lock_type).

    Waits for a busy lock with exponential backoff (base_delay * 2**n)
    and raises LockContention once the retries are used up.  The lock is
    released whether the operation succeeds or fails.
    """
    handle = None
    for attempt in range(max_retries + 1):
        handle = await locks.acquire(owner_id, lock_type, ttl)
        if handle is not None:
            break
        if attempt < max_retries:
            logger.info(
                "Lock %s/%s busy, retrying (%d/%d)",
                owner_id, lock_type, attempt + 1, max_retries,
            )
            await sleep(base_delay * (2 ** attempt))
    if handle is None:
        raise LockContention(f"Another {lock_type.replace('_', ' ')} is already running")

    try:
        return await operation()
    finally:
        await locks.release(handle)
