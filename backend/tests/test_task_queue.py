"""Bounded FIFO task queue."""

import asyncio

import pytest

from app.middleware.exceptions import QueueFullError
from app.utils.task_queue import TaskQueue

from fakes import no_wait


@pytest.mark.unit
@pytest.mark.asyncio
class TestTaskQueue:
    async def test_runs_tasks_in_submission_order(self):
        queue = TaskQueue(sleep=no_wait)
        order = []

        def task(name):
            async def run():
                order.append(name)
                return name
            return run

        futures = [queue.submit(name, task(name)) for name in ("a", "b", "c")]
        results = await asyncio.gather(*futures)

        assert results == ["a", "b", "c"]
        assert order == ["a", "b", "c"]
        assert len(queue) == 0

    async def test_duplicate_keys_share_a_single_run(self):
        queue = TaskQueue(sleep=no_wait)
        calls = 0

        async def run():
            nonlocal calls
            calls += 1
            return "merged"

        first = queue.submit("s1", run)
        second = queue.submit("s1", run)

        assert first is second
        assert "s1" in queue
        assert await first == "merged"
        assert calls == 1

    async def test_failed_tasks_retry_at_the_back_of_the_queue(self):
        delays = []
        order = []

        async def record_sleep(delay):
            delays.append(delay)

        queue = TaskQueue(max_retries=2, base_delay=0.5, sleep=record_sleep)
        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            order.append("flaky")
            if attempts < 3:
                raise RuntimeError("try again")
            return "ok"

        async def steady():
            order.append("steady")
            return "steady"

        flaky_future = queue.submit("flaky", flaky)
        steady_future = queue.submit("steady", steady)

        assert await flaky_future == "ok"
        assert await steady_future == "steady"
        assert order == ["flaky", "steady", "flaky", "flaky"]
        assert delays == [0.5, 1.0]

    async def test_exhausted_retries_surface_the_last_error(self):
        queue = TaskQueue(max_retries=1, base_delay=0, sleep=no_wait)

        async def broken():
            raise RuntimeError("still broken")

        with pytest.raises(RuntimeError, match="still broken"):
            await queue.run("broken", broken)
        assert "broken" not in queue

    async def test_per_task_retry_budget(self):
        queue = TaskQueue(max_retries=5, sleep=no_wait)
        attempts = 0

        async def broken():
            nonlocal attempts
            attempts += 1
            raise RuntimeError("no")

        with pytest.raises(RuntimeError):
            await queue.run("once", broken, max_retries=0)
        assert attempts == 1

    async def test_errors_outside_retry_on_fail_immediately(self):
        queue = TaskQueue(max_retries=3, retry_on=(ConnectionError,), sleep=no_wait)
        attempts = 0

        async def invalid():
            nonlocal attempts
            attempts += 1
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await queue.run("invalid", invalid)
        assert attempts == 1

    async def test_rejects_work_beyond_its_bound(self):
        queue = TaskQueue(maxsize=2, sleep=no_wait)
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()

        queue.submit("a", blocked)
        queue.submit("b", blocked)
        with pytest.raises(QueueFullError):
            queue.submit("c", blocked)

        gate.set()
        await queue.drain()
        assert len(queue) == 0

    async def test_clear_cancels_queued_tasks(self):
        queue = TaskQueue(sleep=no_wait)
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()
            return "ran"

        running = queue.submit("running", blocked)
        queued = queue.submit("queued", blocked)
        await asyncio.sleep(0)

        queue.clear()
        gate.set()

        assert queued.cancelled()
        assert await running == "ran"

    async def test_cancelling_a_waiter_leaves_the_task_running(self):
        queue = TaskQueue(sleep=no_wait)
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()
            return "done"

        waiter = asyncio.create_task(queue.run("shared", blocked))
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        gate.set()
        assert await queue.run("shared", blocked) == "done"
