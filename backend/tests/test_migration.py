"""Anonymous-to-authenticated migration."""

import asyncio

import pytest

from app.middleware.exceptions import (
    ConflictError,
    FatalMigrationError,
    TransientStoreError,
)
from app.services.migration import (
    MigrationCoordinator,
    MigrationPhase,
    MigrationQueue,
    MigrationStatus,
)
from app.services.session import SessionContext
from app.utils.locks import MIGRATION_LOCK

from fakes import InMemoryLockManager, no_wait

IDEA = {"description": "X"}
AUDIENCE = {"name": "Y"}
ANALYSIS = {"pain_points": ["time"]}

CONTEXT = SessionContext(user_id="u1", session_id="s1")


class LeaseLosingLocks(InMemoryLockManager):
    """Lets the lease expire right before the holder verifies it, `times` times."""

    def __init__(self, times: int = 1):
        super().__init__()
        self.times = times

    async def verify(self, handle):
        if self.times:
            self.times -= 1
            self.advance((handle.expires_at - self.now).total_seconds() + 1)
        return await super().verify(handle)


@pytest.fixture
def coordinator(store, locks) -> MigrationCoordinator:
    return MigrationCoordinator(store, locks, retry_delay=0, sleep=no_wait)


@pytest.mark.unit
@pytest.mark.asyncio
class TestMigrationOutcomes:
    async def test_new_user_receives_anonymous_progress(self, coordinator, store):
        store.seed_anonymous(
            "s1", {"business_idea": IDEA, "target_audience": AUDIENCE}, last_completed_step=2
        )

        result = await coordinator.migrate(CONTEXT)

        assert result.status == MigrationStatus.MIGRATED
        assert result.phase == MigrationPhase.DONE
        assert result.attempts == 1
        assert result.session_cleared
        assert result.context.user_id == "u1"

        record = store.progress["u1"]
        assert record.business_idea == IDEA
        assert record.target_audience == AUDIENCE
        assert record.audience_analysis is None
        # Idea and audience present: the analysis step is unlocked
        assert record.current_step == 3
        assert record.version == 1
        assert record.is_migration
        assert record.migration_token == "s1"

        usage = store.anonymous["s1"]
        assert usage.used
        assert usage.migrated_user_id == "u1"
        assert usage.migrated_at is not None

    async def test_existing_progress_is_never_regressed(self, coordinator, store):
        store.seed_progress(
            "u1",
            version=3,
            current_step=4,
            business_idea={"description": "Existing"},
            target_audience={"name": "Existing"},
            audience_analysis=ANALYSIS,
        )
        store.seed_anonymous("s1", {"business_idea": IDEA}, last_completed_step=2)

        result = await coordinator.migrate(CONTEXT)

        record = store.progress["u1"]
        assert result.status == MigrationStatus.MIGRATED
        assert record.current_step == 4
        assert record.version == 4
        assert record.business_idea == {"description": "Existing"}
        assert record.audience_analysis == ANALYSIS

    async def test_anonymous_fields_fill_gaps_in_existing_progress(self, coordinator, store):
        store.seed_progress("u1", version=1, current_step=2, business_idea={"description": "Existing"})
        store.seed_anonymous(
            "s1",
            {"business_idea": IDEA, "target_audience": AUDIENCE, "selected_hooks": [{"text": "Hook"}]},
            last_completed_step=4,
        )

        await coordinator.migrate(CONTEXT)

        record = store.progress["u1"]
        assert record.business_idea == {"description": "Existing"}
        assert record.target_audience == AUDIENCE
        assert record.selected_hooks == [{"text": "Hook"}]
        assert record.current_step == 4

    async def test_no_session(self, coordinator):
        result = await coordinator.migrate(SessionContext(user_id="u1"))

        assert result.status == MigrationStatus.NO_SESSION
        assert result.phase == MigrationPhase.IDLE

    async def test_requires_a_user(self, coordinator):
        with pytest.raises(ValueError):
            await coordinator.migrate(SessionContext(session_id="s1"))

    async def test_missing_session_has_nothing_to_migrate(self, coordinator, store):
        result = await coordinator.migrate(CONTEXT)

        assert result.status == MigrationStatus.NOTHING_TO_MIGRATE
        assert result.session_cleared
        assert "u1" not in store.progress

    async def test_empty_session_has_nothing_to_migrate(self, coordinator, store):
        store.seed_anonymous("s1", {"current_step": 2, "business_idea": {"description": " "}})

        result = await coordinator.migrate(CONTEXT)

        assert result.status == MigrationStatus.NOTHING_TO_MIGRATE
        assert store.anonymous["s1"].migrated_user_id is None

    async def test_already_migrated_by_token(self, coordinator, store, locks):
        store.seed_progress("u1", business_idea=IDEA, migration_token="s1")
        store.seed_anonymous("s1", {"business_idea": {"description": "Later edit"}})

        result = await coordinator.migrate(CONTEXT)

        assert result.status == MigrationStatus.ALREADY_MIGRATED
        assert result.session_cleared
        assert store.progress["u1"].business_idea == IDEA
        assert store.anonymous["s1"].migrated_user_id == "u1"
        assert locks.acquired == 0

    async def test_already_migrated_by_session_marker(self, coordinator, store):
        store.seed_anonymous("s1", {"business_idea": IDEA}, migrated_user_id="u1")

        result = await coordinator.migrate(CONTEXT)

        assert result.status == MigrationStatus.ALREADY_MIGRATED
        assert "u1" not in store.progress

    async def test_locked_keeps_the_session(self, coordinator, store, locks):
        await locks.acquire("u1", MIGRATION_LOCK, ttl=300)
        store.seed_anonymous("s1", {"business_idea": IDEA})

        result = await coordinator.migrate(CONTEXT)

        assert result.status == MigrationStatus.LOCKED
        assert result.phase == MigrationPhase.LOCK_ACQUISITION
        assert result.context.session_id == "s1"
        assert not result.session_cleared
        assert "u1" not in store.progress

    async def test_lock_is_released_afterwards(self, coordinator, store, locks):
        store.seed_anonymous("s1", {"business_idea": IDEA})

        await coordinator.migrate(CONTEXT)

        assert not await locks.is_held("u1", MIGRATION_LOCK)
        assert locks.acquired == 1

    async def test_backup_is_taken_before_merging(self, coordinator, store):
        store.seed_progress("u1", business_idea={"description": "Existing"})
        store.seed_anonymous("s1", {"target_audience": AUDIENCE}, last_completed_step=3)

        await coordinator.migrate(CONTEXT)

        assert len(store.backups) == 1
        backup = store.backups[0]
        assert backup["session_id"] == "s1"
        assert backup["backup_type"] == "migration"
        assert backup["data"]["anonymous"] == {"target_audience": AUDIENCE}
        assert backup["data"]["existing"]["business_idea"] == {"description": "Existing"}

    async def test_failed_backup_does_not_block_migration(self, coordinator, store):
        store.seed_anonymous("s1", {"business_idea": IDEA})
        store.fail("insert_backup", TransientStoreError())

        result = await coordinator.migrate(CONTEXT)

        assert result.status == MigrationStatus.MIGRATED
        assert store.backups == []

    async def test_backups_can_be_disabled(self, store, locks):
        coordinator = MigrationCoordinator(store, locks, backup_enabled=False, sleep=no_wait)
        store.seed_anonymous("s1", {"business_idea": IDEA})

        await coordinator.migrate(CONTEXT)

        assert store.calls["insert_backup"] == 0


@pytest.mark.unit
@pytest.mark.asyncio
class TestMigrationRetries:
    async def test_transient_failure_is_retried(self, coordinator, store):
        store.seed_anonymous("s1", {"business_idea": IDEA})
        store.fail("get_anonymous", TransientStoreError())

        result = await coordinator.migrate(CONTEXT)

        assert result.status == MigrationStatus.MIGRATED
        assert result.attempts == 2

    async def test_version_conflict_during_commit_is_retried(self, coordinator, store):
        store.seed_progress("u1", business_idea={"description": "Existing"})
        store.seed_anonymous("s1", {"target_audience": AUDIENCE})
        store.fail("update_progress", ConflictError())

        result = await coordinator.migrate(CONTEXT)

        assert result.status == MigrationStatus.MIGRATED
        assert result.attempts == 2
        assert store.progress["u1"].target_audience == AUDIENCE

    async def test_failed_cleanup_is_finished_on_retry(self, coordinator, store):
        store.seed_anonymous("s1", {"business_idea": IDEA, "target_audience": AUDIENCE})
        store.fail("mark_anonymous_migrated", TransientStoreError())

        result = await coordinator.migrate(CONTEXT)

        assert result.status == MigrationStatus.ALREADY_MIGRATED
        assert result.session_cleared
        assert result.attempts == 2
        usage = store.anonymous["s1"]
        assert usage.used
        assert usage.migrated_user_id == "u1"
        assert usage.last_completed_step == 3
        assert store.progress["u1"].version == 1

    async def test_exhaustion_leaves_anonymous_data_intact(self, store, locks):
        delays = []

        async def record_sleep(delay):
            delays.append(delay)

        coordinator = MigrationCoordinator(store, locks, max_retries=3, retry_delay=1.0, sleep=record_sleep)
        store.seed_anonymous("s1", {"business_idea": IDEA})
        store.fail("get_anonymous", *[TransientStoreError() for _ in range(3)])

        with pytest.raises(FatalMigrationError) as exc_info:
            await coordinator.migrate(CONTEXT)

        assert exc_info.value.attempts == 3
        assert exc_info.value.details["retryable"]
        assert delays == [1.0, 2.0]
        assert store.anonymous["s1"].wizard_data == {"business_idea": IDEA}
        assert store.anonymous["s1"].migrated_user_id is None
        assert "u1" not in store.progress
        assert not await locks.is_held("u1", MIGRATION_LOCK)

    async def test_malformed_session_data_fails_immediately(self, coordinator, store):
        store.seed_anonymous("s1", {"business_idea": "not an object"})

        with pytest.raises(FatalMigrationError) as exc_info:
            await coordinator.migrate(CONTEXT)

        assert exc_info.value.attempts == 1
        assert store.calls["get_anonymous"] == 1

    async def test_lost_lease_aborts_the_commit_and_retries(self, store):
        locks = LeaseLosingLocks(times=1)
        coordinator = MigrationCoordinator(store, locks, retry_delay=0, sleep=no_wait)
        store.seed_anonymous("s1", {"business_idea": IDEA})

        result = await coordinator.migrate(CONTEXT)

        assert result.status == MigrationStatus.MIGRATED
        assert result.attempts == 2
        assert locks.acquired == 2
        assert store.calls["insert_progress"] == 1


@pytest.mark.concurrency
@pytest.mark.asyncio
class TestConcurrentMigration:
    async def test_concurrent_workers_migrate_exactly_once(self, store, locks):
        store.seed_anonymous("s1", {"business_idea": IDEA, "target_audience": AUDIENCE})
        coordinators = [
            MigrationCoordinator(store, locks, retry_delay=0, sleep=no_wait) for _ in range(5)
        ]

        results = await asyncio.gather(*[c.migrate(CONTEXT) for c in coordinators])

        statuses = [r.status for r in results]
        assert statuses.count(MigrationStatus.MIGRATED) == 1
        assert set(statuses) <= {
            MigrationStatus.MIGRATED,
            MigrationStatus.LOCKED,
            MigrationStatus.ALREADY_MIGRATED,
        }
        assert store.calls["insert_progress"] + store.calls["update_progress"] == 1
        assert store.anonymous["s1"].migrated_user_id == "u1"
        assert store.progress["u1"].version == 1

    async def test_repeat_after_success_is_a_no_op(self, coordinator, store):
        store.seed_anonymous("s1", {"business_idea": IDEA})

        first = await coordinator.migrate(CONTEXT)
        second = await coordinator.migrate(CONTEXT)

        assert first.status == MigrationStatus.MIGRATED
        assert second.status == MigrationStatus.ALREADY_MIGRATED
        assert store.progress["u1"].version == 1

    async def test_cleanup_twice_is_safe(self, store):
        store.seed_anonymous("s1", {"business_idea": IDEA}, used=True)

        assert await store.mark_anonymous_migrated("s1", "u1", 2)
        assert not await store.mark_anonymous_migrated("s1", "u2", 3)
        assert store.anonymous["s1"].migrated_user_id == "u1"


@pytest.mark.unit
@pytest.mark.asyncio
class TestMigrationQueue:
    async def test_duplicate_requests_share_one_run(self, coordinator, store):
        store.seed_anonymous("s1", {"business_idea": IDEA})
        queue = MigrationQueue(maxsize=4)

        first, second = await asyncio.gather(
            queue.migrate(coordinator, CONTEXT),
            queue.migrate(coordinator, CONTEXT),
        )

        assert first is second
        assert first.status == MigrationStatus.MIGRATED
        assert store.calls["get_anonymous"] == 1
        assert len(queue) == 0

    async def test_contexts_without_a_session_bypass_the_queue(self, coordinator):
        queue = MigrationQueue()

        result = await queue.migrate(coordinator, SessionContext(user_id="u1"))

        assert result.status == MigrationStatus.NO_SESSION

    async def test_fatal_errors_reach_every_waiter(self, coordinator, store):
        store.seed_anonymous("s1", {"business_idea": "not an object"})
        queue = MigrationQueue()

        results = await asyncio.gather(
            queue.migrate(coordinator, CONTEXT),
            queue.migrate(coordinator, CONTEXT),
            return_exceptions=True,
        )

        assert all(isinstance(r, FatalMigrationError) for r in results)


@pytest.mark.integration
@pytest.mark.asyncio
class TestSqlMigration:
    async def test_server_side_merge(self, sql_store, sql_locks):
        coordinator = MigrationCoordinator(sql_store, sql_locks, retry_delay=0)
        await sql_store.save_anonymous(
            "s1", {"business_idea": IDEA, "target_audience": AUDIENCE}, last_completed_step=2
        )

        result = await coordinator.migrate(CONTEXT)

        assert result.status == MigrationStatus.MIGRATED
        record = await sql_store.get_progress("u1")
        assert record.business_idea == IDEA
        assert record.target_audience == AUDIENCE
        assert record.current_step == 3
        assert record.version == 1
        assert record.migration_token == "s1"
        usage = await sql_store.get_anonymous("s1")
        assert usage.used
        assert usage.migrated_user_id == "u1"
        assert not await sql_locks.is_held("u1", MIGRATION_LOCK)

        again = await coordinator.migrate(CONTEXT)
        assert again.status == MigrationStatus.ALREADY_MIGRATED

    async def test_step_by_step_commit(self, sql_store, sql_locks):
        coordinator = MigrationCoordinator(sql_store, sql_locks, retry_delay=0, use_atomic=False)
        await sql_store.insert_progress("u1", {"business_idea": {"description": "Existing"}, "current_step": 2})
        await sql_store.save_anonymous("s1", {"target_audience": AUDIENCE}, last_completed_step=3)

        result = await coordinator.migrate(CONTEXT)

        assert result.status == MigrationStatus.MIGRATED
        record = await sql_store.get_progress("u1")
        assert record.business_idea == {"description": "Existing"}
        assert record.target_audience == AUDIENCE
        assert record.current_step == 3
        assert record.version == 2
        usage = await sql_store.get_anonymous("s1")
        assert usage.migrated_user_id == "u1"

    async def test_marking_migrated_twice_is_safe(self, sql_store):
        await sql_store.save_anonymous("s1", {"business_idea": IDEA}, last_completed_step=2)

        assert await sql_store.mark_anonymous_migrated("s1", "u1", 2)
        assert not await sql_store.mark_anonymous_migrated("s1", "u2", 2)

    async def test_migrated_session_rejects_later_writes(self, sql_store):
        await sql_store.save_anonymous("s1", {"business_idea": IDEA}, last_completed_step=2)
        await sql_store.mark_anonymous_migrated("s1", "u1", 2)

        await sql_store.save_anonymous("s1", {"business_idea": {"description": "New"}}, last_completed_step=3)
        await sql_store.clear_anonymous("s1")

        usage = await sql_store.get_anonymous("s1")
        assert usage.wizard_data == {"business_idea": IDEA}
        assert usage.last_completed_step == 2
        assert usage.save_count == 1
        assert usage.migrated_user_id == "u1"
