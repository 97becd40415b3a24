"""Anonymous-to-authenticated progress migration.

When a request carries both an authenticated user id and an anonymous
session id, the session's wizard data is merged into the user's progress
record at most once:

    IDLE -> LOCK_ACQUISITION -> FETCHING -> MERGING -> COMMITTING -> CLEANUP -> DONE

The migration lock row serializes workers for the same user.  The
"already migrated" markers (`migration_token` on the user row,
`migrated_user_id` on the anonymous row) make repeats harmless.  Losing
the lock race is an outcome (`LOCKED`), not an error: whoever holds the
lock is doing the work.  Anything else is retried with linear backoff and
finally raised as `FatalMigrationError`, leaving the anonymous data as it
was.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from app.middleware.exceptions import (
    AdWizardException,
    ConflictError,
    FatalMigrationError,
    LockLostError,
    WizardValidationError,
)
from app.models.anonymous_usage import AnonymousUsage
from app.models.wizard_progress import WizardProgress
from app.services.progress import (
    MergePlan,
    calculated_anonymous_step,
    is_empty,
    merge_progress,
    parse_wizard_data,
    payload_fields,
    record_to_data,
)
from app.services.progress_store import ProgressStore
from app.services.session import SessionContext
from app.utils.locks import MIGRATION_LOCK, LockHandle, LockManager
from app.utils.task_queue import TaskQueue

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_LOCK_TTL = 300


class MigrationPhase(str, enum.Enum):
    IDLE = "idle"
    LOCK_ACQUISITION = "lock_acquisition"
    FETCHING = "fetching"
    MERGING = "merging"
    COMMITTING = "committing"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


class MigrationStatus(str, enum.Enum):
    MIGRATED = "migrated"
    NOTHING_TO_MIGRATE = "nothing_to_migrate"
    ALREADY_MIGRATED = "already_migrated"
    LOCKED = "locked"
    NO_SESSION = "no_session"


@dataclass
class MigrationResult:
    status: MigrationStatus
    context: SessionContext
    phase: MigrationPhase = MigrationPhase.DONE
    record: WizardProgress | None = None
    attempts: int = 0

    @property
    def session_cleared(self) -> bool:
        return self.context.session_id is None


class MigrationCoordinator:
    def __init__(
        self,
        store: ProgressStore,
        locks: LockManager,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        lock_ttl: float = DEFAULT_LOCK_TTL,
        use_atomic: bool = True,
        backup_enabled: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.locks = locks
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.lock_ttl = lock_ttl
        self.use_atomic = use_atomic and getattr(store, "supports_atomic_migrate", False)
        self.backup_enabled = backup_enabled
        self._sleep = sleep

    async def migrate(self, context: SessionContext) -> MigrationResult:
        """Merge the context's anonymous session into its user, at most once.

        The returned context drops the session id whenever the session no
        longer needs migrating; a `LOCKED` result keeps it so the client
        can ask again.
        """
        if not context.session_id:
            return MigrationResult(MigrationStatus.NO_SESSION, context, phase=MigrationPhase.IDLE)
        if not context.user_id:
            raise ValueError("Migration needs an authenticated user")

        last_error: AdWizardException | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                result = await self._attempt(context)
                result.attempts = attempt
                return result
            except WizardValidationError as exc:
                logger.error(
                    "Anonymous session %s holds malformed data: %s",
                    context.session_id, exc.message,
                )
                raise FatalMigrationError(attempts=attempt) from exc
            except AdWizardException as exc:
                last_error = exc
                if attempt < self.max_retries:
                    logger.warning(
                        "Migration of %s into %s failed (%s), retry %d/%d",
                        context.session_id, context.user_id, exc.message,
                        attempt, self.max_retries - 1,
                    )
                    await self._sleep(self.retry_delay * attempt)

        logger.error(
            "Migration of %s into %s abandoned after %d attempts",
            context.session_id, context.user_id, self.max_retries,
            extra={"phase": MigrationPhase.FAILED.value},
        )
        raise FatalMigrationError(attempts=self.max_retries) from last_error

    async def _attempt(self, context: SessionContext) -> MigrationResult:
        user_id, session_id = context.user_id, context.session_id

        existing = await self.store.get_progress(user_id)
        if existing is not None and existing.migration_token == session_id:
            logger.info("Session %s already merged into %s", session_id, user_id)
            # Finishes a cleanup that failed after the progress commit; no-op once closed
            await self.store.mark_anonymous_migrated(session_id, user_id, existing.current_step)
            return MigrationResult(
                MigrationStatus.ALREADY_MIGRATED, context.without_session(), record=existing
            )

        self._enter(MigrationPhase.LOCK_ACQUISITION, context)
        handle = await self.locks.acquire(
            user_id, MIGRATION_LOCK, self.lock_ttl, metadata={"session_id": session_id}
        )
        if handle is None:
            logger.info("Migration for %s already running elsewhere", user_id)
            return MigrationResult(
                MigrationStatus.LOCKED, context, phase=MigrationPhase.LOCK_ACQUISITION
            )

        try:
            return await self._migrate_locked(context, handle)
        finally:
            await self.locks.release(handle)

    async def _migrate_locked(self, context: SessionContext, handle: LockHandle) -> MigrationResult:
        user_id, session_id = context.user_id, context.session_id

        self._enter(MigrationPhase.FETCHING, context)
        usage = await self.store.get_anonymous(session_id)
        if usage is None:
            return MigrationResult(MigrationStatus.NOTHING_TO_MIGRATE, context.without_session())
        if usage.migrated_user_id:
            logger.info(
                "Session %s was already migrated into %s", session_id, usage.migrated_user_id
            )
            return MigrationResult(MigrationStatus.ALREADY_MIGRATED, context.without_session())
        anonymous = parse_wizard_data(usage.wizard_data)
        if is_empty(anonymous):
            return MigrationResult(MigrationStatus.NOTHING_TO_MIGRATE, context.without_session())
        existing = await self.store.get_progress(user_id)

        if self.backup_enabled:
            await self._backup(user_id, session_id, usage, existing)

        self._enter(MigrationPhase.MERGING, context)
        calculated_step = calculated_anonymous_step(anonymous, usage.last_completed_step)
        plan = merge_progress(
            anonymous, record_to_data(existing) if existing else None, calculated_step
        )

        self._enter(MigrationPhase.COMMITTING, context)
        if not await self.locks.verify(handle):
            raise LockLostError()

        if self.use_atomic:
            record = await self.store.atomic_migrate(user_id, session_id, calculated_step)
            if record is None:
                return MigrationResult(MigrationStatus.NOTHING_TO_MIGRATE, context.without_session())
        else:
            record = await self._commit(user_id, session_id, existing, plan)
            self._enter(MigrationPhase.CLEANUP, context)
            await self.store.mark_anonymous_migrated(
                session_id,
                user_id,
                max(usage.last_completed_step or 1, plan.current_step),
            )

        logger.info(
            "Migrated session %s into %s at step %d (v%d)",
            session_id, user_id, record.current_step, record.version,
        )
        return MigrationResult(MigrationStatus.MIGRATED, context.without_session(), record=record)

    async def _commit(
        self,
        user_id: str,
        session_id: str,
        existing: WizardProgress | None,
        plan: MergePlan,
    ) -> WizardProgress:
        fields = dict(
            plan.fields,
            current_step=plan.current_step,
            is_migration=True,
            migration_token=session_id,
        )
        if existing is None:
            return await self.store.insert_progress(user_id, fields)

        record = await self.store.update_progress(user_id, fields, existing.version)
        if record is None:
            raise ConflictError(f"Progress for {user_id} changed during migration")
        return record

    async def _backup(
        self,
        user_id: str,
        session_id: str,
        usage: AnonymousUsage,
        existing: WizardProgress | None,
    ) -> None:
        snapshot = {
            "anonymous": usage.wizard_data,
            "last_completed_step": usage.last_completed_step,
            "existing": (
                payload_fields(record_to_data(existing), include_empty=True) if existing else None
            ),
        }
        try:
            await self.store.insert_backup(user_id, session_id, snapshot)
        except AdWizardException as exc:
            logger.warning("Backup before migrating %s failed: %s", session_id, exc.message)

    @staticmethod
    def _enter(phase: MigrationPhase, context: SessionContext) -> None:
        logger.debug(
            "Migration %s -> %s: %s", context.session_id, context.user_id, phase.value
        )


class MigrationQueue:
    """Collapses duplicate migration requests for one session within a process."""

    def __init__(self, maxsize: int = 32):
        self._queue = TaskQueue(maxsize=maxsize, max_retries=0, name="migration")

    async def migrate(
        self, coordinator: MigrationCoordinator, context: SessionContext
    ) -> MigrationResult:
        if not context.needs_migration:
            return await coordinator.migrate(context)
        return await self._queue.run(
            context.session_id, lambda: coordinator.migrate(context)
        )

    def __len__(self) -> int:
        return len(self._queue)
