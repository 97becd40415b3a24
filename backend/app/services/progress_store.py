"""Progress store: anonymous usage rows, user progress rows, migration backups.

Every method opens its own session and commits before returning, so a
version-gated update is visible to concurrent writers as soon as the call
completes.  SQLAlchemy errors are converted to the wizard taxonomy here:
unique violations on insert become `ConflictError`, everything else
becomes `TransientStoreError`.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.middleware.exceptions import ConflictError, TransientStoreError
from app.models.anonymous_usage import AnonymousUsage
from app.models.data_backup import DataBackup
from app.models.wizard_progress import WizardProgress
from app.services.progress import (
    PROGRESS_FIELDS,
    calculated_anonymous_step,
    is_empty,
    merge_progress,
    parse_wizard_data,
    record_to_data,
)
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


class ProgressStore(Protocol):
    """Operations the save engine, migration coordinator and wizard rely on."""

    supports_atomic_migrate: bool

    async def get_progress(self, user_id: str) -> WizardProgress | None: ...

    async def insert_progress(self, user_id: str, fields: dict) -> WizardProgress: ...

    async def update_progress(
        self, user_id: str, fields: dict, expected_version: int
    ) -> WizardProgress | None: ...

    async def reset_progress(self, user_id: str) -> WizardProgress | None: ...

    async def get_anonymous(self, session_id: str) -> AnonymousUsage | None: ...

    async def create_anonymous(self, session_id: str) -> AnonymousUsage: ...

    async def save_anonymous(
        self, session_id: str, wizard_data: dict, last_completed_step: int
    ) -> AnonymousUsage: ...

    async def clear_anonymous(self, session_id: str) -> None: ...

    async def mark_trial_consumed(self, session_id: str) -> None: ...

    async def mark_anonymous_migrated(
        self, session_id: str, user_id: str, last_completed_step: int
    ) -> bool: ...

    async def insert_backup(
        self, user_id: str, session_id: str | None, data: dict, backup_type: str = "migration"
    ) -> None: ...


def _converts_store_errors(func):
    """Translate raw SQLAlchemy failures into the wizard error taxonomy."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except IntegrityError as exc:
            logger.info("Integrity conflict in %s: %s", func.__name__, exc.orig)
            raise ConflictError("Record was created concurrently") from exc
        except SQLAlchemyError as exc:
            logger.warning("Store error in %s: %s", func.__name__, exc)
            raise TransientStoreError() from exc

    return wrapper


class SqlProgressStore:
    """ProgressStore backed by async SQLAlchemy."""

    supports_atomic_migrate = True

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── User progress ───────────────────────────────────────

    @_converts_store_errors
    async def get_progress(self, user_id: str) -> WizardProgress | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WizardProgress).where(WizardProgress.user_id == user_id)
            )
            return result.scalar_one_or_none()

    @_converts_store_errors
    async def insert_progress(self, user_id: str, fields: dict) -> WizardProgress:
        now = utcnow()
        async with self._session_factory() as session:
            record = WizardProgress(
                user_id=user_id,
                version=1,
                current_step=fields.get("current_step") or 1,
                last_save_attempt=now,
                updated_at=now,
                **_record_values(fields, exclude=("current_step",)),
            )
            session.add(record)
            await session.commit()
            return record

    @_converts_store_errors
    async def update_progress(
        self, user_id: str, fields: dict, expected_version: int
    ) -> WizardProgress | None:
        """Conditional update; returns None when the stored version moved on."""
        now = utcnow()
        values = _record_values(fields)
        values.update(
            version=expected_version + 1,
            updated_at=now,
            last_save_attempt=now,
        )
        async with self._session_factory() as session:
            result = await session.execute(
                update(WizardProgress)
                .where(
                    WizardProgress.user_id == user_id,
                    WizardProgress.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None
            await session.commit()
            refreshed = await session.execute(
                select(WizardProgress).where(WizardProgress.user_id == user_id)
            )
            return refreshed.scalar_one_or_none()

    @_converts_store_errors
    async def reset_progress(self, user_id: str) -> WizardProgress | None:
        """Null every payload, return to step 1, advance the version."""
        now = utcnow()
        async with self._session_factory() as session:
            await session.execute(
                update(WizardProgress)
                .where(WizardProgress.user_id == user_id)
                .values(
                    **{f: None for f in PROGRESS_FIELDS},
                    current_step=1,
                    version=WizardProgress.version + 1,
                    updated_at=now,
                    last_save_attempt=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            result = await session.execute(
                select(WizardProgress).where(WizardProgress.user_id == user_id)
            )
            return result.scalar_one_or_none()

    # ── Anonymous usage ─────────────────────────────────────

    @_converts_store_errors
    async def get_anonymous(self, session_id: str) -> AnonymousUsage | None:
        async with self._session_factory() as session:
            return await session.get(AnonymousUsage, session_id)

    @_converts_store_errors
    async def create_anonymous(self, session_id: str) -> AnonymousUsage:
        async with self._session_factory() as session:
            existing = await session.get(AnonymousUsage, session_id)
            if existing:
                return existing
            usage = AnonymousUsage(
                session_id=session_id,
                used=False,
                completed=False,
                wizard_data={},
                last_completed_step=1,
                save_count=0,
            )
            session.add(usage)
            await session.commit()
            return usage

    @_converts_store_errors
    async def save_anonymous(
        self, session_id: str, wizard_data: dict, last_completed_step: int
    ) -> AnonymousUsage:
        """Upsert the session's progress; counts every save attempt.

        A session closed by migration is returned untouched.
        """
        now = utcnow()
        async with self._session_factory() as session:
            usage = await session.get(AnonymousUsage, session_id, with_for_update=True)
            if usage is None:
                usage = AnonymousUsage(
                    session_id=session_id,
                    used=False,
                    completed=False,
                    save_count=0,
                    last_completed_step=1,
                )
                session.add(usage)
            elif usage.migrated_user_id:
                logger.info("Ignoring save to migrated session %s", session_id)
                return usage
            usage.wizard_data = wizard_data
            usage.last_completed_step = max(usage.last_completed_step or 1, last_completed_step)
            usage.save_count = (usage.save_count or 0) + 1
            usage.last_save_attempt = now
            usage.updated_at = now
            await session.commit()
            return usage

    @_converts_store_errors
    async def clear_anonymous(self, session_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(AnonymousUsage)
                .where(
                    AnonymousUsage.session_id == session_id,
                    AnonymousUsage.migrated_user_id.is_(None),
                )
                .values(wizard_data={}, last_completed_step=1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    @_converts_store_errors
    async def mark_trial_consumed(self, session_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(AnonymousUsage)
                .where(AnonymousUsage.session_id == session_id)
                .values(used=True, completed=True, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    @_converts_store_errors
    async def mark_anonymous_migrated(
        self, session_id: str, user_id: str, last_completed_step: int
    ) -> bool:
        """Close the session after a merge.  Returns False if it was already closed."""
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(AnonymousUsage)
                .where(
                    AnonymousUsage.session_id == session_id,
                    AnonymousUsage.migrated_user_id.is_(None),
                )
                .values(
                    used=True,
                    completed=True,
                    last_completed_step=last_completed_step,
                    migrated_user_id=user_id,
                    migrated_at=now,
                    last_save_attempt=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount > 0

    # ── Backups ─────────────────────────────────────────────

    @_converts_store_errors
    async def insert_backup(
        self, user_id: str, session_id: str | None, data: dict, backup_type: str = "migration"
    ) -> None:
        async with self._session_factory() as session:
            session.add(
                DataBackup(
                    user_id=user_id,
                    session_id=session_id,
                    data=data,
                    backup_type=backup_type,
                )
            )
            await session.commit()

    # ── Server-side migration ───────────────────────────────

    @_converts_store_errors
    async def atomic_migrate(
        self, user_id: str, session_id: str, calculated_step: int
    ) -> WizardProgress | None:
        """Merge, commit and close the anonymous session in one transaction.

        Returns None when there is nothing to merge (session missing,
        empty, or already migrated).  Callers hold the migration lock.
        """
        now = utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                usage = await session.get(AnonymousUsage, session_id, with_for_update=True)
                if usage is None or usage.migrated_user_id:
                    return None
                anonymous = parse_wizard_data(usage.wizard_data)
                if is_empty(anonymous):
                    return None

                calculated_step = max(
                    calculated_step,
                    calculated_anonymous_step(anonymous, usage.last_completed_step),
                )

                result = await session.execute(
                    select(WizardProgress)
                    .where(WizardProgress.user_id == user_id)
                    .with_for_update()
                )
                record = result.scalar_one_or_none()
                plan = merge_progress(
                    anonymous,
                    record_to_data(record) if record else None,
                    calculated_step,
                )

                if record is None:
                    record = WizardProgress(user_id=user_id, version=1, created_at=now)
                    session.add(record)
                else:
                    record.version = record.version + 1
                for name, value in plan.fields.items():
                    setattr(record, name, value)
                record.current_step = plan.current_step
                record.is_migration = True
                record.migration_token = session_id
                record.updated_at = now
                record.last_save_attempt = now

                usage.used = True
                usage.completed = True
                usage.last_completed_step = max(usage.last_completed_step or 1, plan.current_step)
                usage.migrated_user_id = user_id
                usage.migrated_at = now
                usage.updated_at = now
            return record


def _record_values(fields: dict, exclude: tuple[str, ...] = ()) -> dict[str, Any]:
    """Keep only columns a save may touch."""
    allowed = set(PROGRESS_FIELDS) | {"current_step", "is_migration", "migration_token"}
    return {k: v for k, v in fields.items() if k in allowed and k not in exclude}
