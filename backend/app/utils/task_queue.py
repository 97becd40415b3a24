"""Bounded FIFO task queue with per-key de-duplication and retry/backoff.

One worker coroutine runs tasks strictly one at a time.  Submitting a key
that is already queued or running returns the existing future instead of
scheduling a second run, which is how duplicate migration requests from
the same process collapse into one.  A failed task goes to the back of
the queue after `base_delay * attempt` seconds, up to its retry budget;
after that its future carries the last exception.
"""

from __future__ import annotations

import asyncio
import collections
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from app.middleware.exceptions import QueueFullError

logger = logging.getLogger(__name__)


@dataclass
class QueuedTask:
    key: str
    factory: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    max_retries: int
    attempts: int = 0
    errors: list[BaseException] = field(default_factory=list)


class TaskQueue:
    def __init__(
        self,
        maxsize: int = 32,
        max_retries: int = 3,
        base_delay: float = 1.0,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "tasks",
    ):
        self.maxsize = maxsize
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.retry_on = retry_on
        self.name = name
        self._sleep = sleep
        self._queue: collections.deque[QueuedTask] = collections.deque()
        self._by_key: dict[str, QueuedTask] = {}
        self._worker: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._by_key)

    def __contains__(self, key: str) -> bool:
        return key in self._by_key

    @property
    def is_processing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def submit(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        max_retries: int | None = None,
    ) -> asyncio.Future:
        """Enqueue `factory` under `key` and return a future for its result."""
        existing = self._by_key.get(key)
        if existing is not None:
            logger.debug("[%s] %s already queued, sharing its result", self.name, key)
            return existing.future

        if len(self._by_key) >= self.maxsize:
            raise QueueFullError(f"{self.name} queue is full ({self.maxsize})")

        loop = asyncio.get_running_loop()
        task = QueuedTask(
            key=key,
            factory=factory,
            future=loop.create_future(),
            max_retries=self.max_retries if max_retries is None else max_retries,
        )
        self._queue.append(task)
        self._by_key[key] = task
        logger.debug("[%s] queued %s (%d pending)", self.name, key, len(self._queue))

        if not self.is_processing:
            self._worker = asyncio.create_task(self._process())
        return task.future

    async def run(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        max_retries: int | None = None,
    ) -> Any:
        """Submit and wait.  Cancelling the waiter does not cancel the shared task."""
        return await asyncio.shield(self.submit(key, factory, max_retries))

    async def drain(self) -> None:
        """Wait until every queued task has finished."""
        while self.is_processing:
            await asyncio.shield(self._worker)

    def clear(self) -> None:
        """Drop queued (not running) tasks; their futures are cancelled."""
        # The worker keeps its current task at the head until it finishes
        running = self._queue.popleft() if self.is_processing and self._queue else None
        while self._queue:
            task = self._queue.popleft()
            self._by_key.pop(task.key, None)
            if not task.future.done():
                task.future.cancel()
        if running is not None:
            self._queue.append(running)
        logger.debug("[%s] queue cleared", self.name)

    async def _process(self) -> None:
        while self._queue:
            task = self._queue[0]
            try:
                result = await task.factory()
            except self.retry_on as exc:
                task.attempts += 1
                task.errors.append(exc)
                self._queue.popleft()
                if task.attempts <= task.max_retries:
                    logger.warning(
                        "[%s] %s failed (%s), retry %d/%d",
                        self.name, task.key, exc, task.attempts, task.max_retries,
                    )
                    self._queue.append(task)
                    await self._sleep(self.base_delay * task.attempts)
                else:
                    logger.error("[%s] %s failed after %d attempts", self.name, task.key, task.attempts)
                    self._finish(task, error=exc)
            except asyncio.CancelledError:
                self._queue.popleft()
                self._by_key.pop(task.key, None)
                task.future.cancel()
                raise
            except Exception as exc:
                self._queue.popleft()
                self._finish(task, error=exc)
            else:
                self._queue.popleft()
                self._finish(task, result=result)

    def _finish(self, task: QueuedTask, result: Any = None, error: BaseException | None = None) -> None:
        self._by_key.pop(task.key, None)
        if task.future.done():
            return
        if error is not None:
            task.future.set_exception(error)
        else:
            task.future.set_result(result)
