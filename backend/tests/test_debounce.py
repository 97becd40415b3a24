"""Debounced saves."""

import asyncio

import pytest

from app.middleware.exceptions import FatalSaveError
from app.utils.debounce import SaveDebouncer

from fakes import no_wait


class Recorder:
    def __init__(self):
        self.state = 0
        self.saved = []
        self.errors = []

    async def save(self):
        await asyncio.sleep(0)
        if self.errors:
            raise self.errors.pop(0)
        self.saved.append(self.state)
        return self.state


@pytest.mark.unit
@pytest.mark.asyncio
class TestSaveDebouncer:
    async def test_burst_collapses_into_one_save_of_the_latest_state(self):
        recorder = Recorder()
        debouncer = SaveDebouncer(recorder.save, delay=0, sleep=no_wait)

        for value in (1, 2, 3):
            recorder.state = value
            debouncer.schedule()
        assert debouncer.pending

        await debouncer.flush()

        assert recorder.saved == [3]
        assert debouncer.save_count == 1
        assert debouncer.last_result == 3
        assert not debouncer.pending

    async def test_timer_fires_without_flush(self):
        recorder = Recorder()
        debouncer = SaveDebouncer(recorder.save, delay=0, sleep=no_wait)

        recorder.state = 7
        debouncer.schedule()
        for _ in range(5):
            await asyncio.sleep(0)

        assert recorder.saved == [7]

    async def test_flush_without_pending_changes_is_a_no_op(self):
        recorder = Recorder()
        debouncer = SaveDebouncer(recorder.save, delay=0, sleep=no_wait)

        assert await debouncer.flush() is None
        assert recorder.saved == []

    async def test_errors_are_kept_not_raised(self):
        recorder = Recorder()
        recorder.errors.append(FatalSaveError(attempts=4))
        debouncer = SaveDebouncer(recorder.save, delay=0, sleep=no_wait)

        debouncer.schedule()
        error = await debouncer.flush()

        assert isinstance(error, FatalSaveError)
        assert debouncer.last_error is error
        assert debouncer.save_count == 0

    async def test_next_successful_save_clears_the_error(self):
        recorder = Recorder()
        recorder.errors.append(FatalSaveError(attempts=4))
        debouncer = SaveDebouncer(recorder.save, delay=0, sleep=no_wait)

        debouncer.schedule()
        await debouncer.flush()
        debouncer.schedule()
        await debouncer.flush()

        assert debouncer.last_error is None
        assert debouncer.save_count == 1

    async def test_saves_never_overlap(self):
        active = 0
        peak = 0

        async def slow_save():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            active -= 1

        debouncer = SaveDebouncer(slow_save, delay=0, sleep=no_wait)
        debouncer.schedule()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        debouncer.schedule()
        await debouncer.flush()

        assert peak == 1
