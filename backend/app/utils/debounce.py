"""Coalesce bursts of save requests into a single write.

`schedule()` (re)starts a quiet-period timer; when it fires, the save
callable runs once and reads whatever state is current at that moment, so
the write reflects the latest edit rather than any intermediate one.
Saves never overlap.  Taxonomy errors are kept on `last_error` instead of
being raised, because a failed save must not undo the caller's state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from app.middleware.exceptions import AdWizardException

logger = logging.getLogger(__name__)


class SaveDebouncer:
    def __init__(
        self,
        save: Callable[[], Awaitable[Any]],
        delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._save = save
        self.delay = delay
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._dirty = False
        self._waiting = False
        self._timer: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self.save_count = 0
        self.last_result: Any = None
        self.last_error: AdWizardException | None = None

    @property
    def pending(self) -> bool:
        return self._dirty

    def schedule(self) -> None:
        self._dirty = True
        if self._timer is not None and self._waiting:
            self._timer.cancel()
        self._waiting = True
        self._timer = asyncio.create_task(self._fire_after(self.delay))
        self._tasks.add(self._timer)
        self._timer.add_done_callback(self._tasks.discard)

    async def flush(self) -> AdWizardException | None:
        """Run any pending save now and wait for in-flight ones.  Returns the last error."""
        if self._timer is not None and self._waiting:
            self._timer.cancel()
            self._waiting = False

        pending = [t for t in self._tasks if not t.done()]
        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    raise result

        await self._run()
        return self.last_error

    async def _fire_after(self, delay: float) -> None:
        await self._sleep(delay)
        self._waiting = False
        await self._run()

    async def _run(self) -> None:
        async with self._lock:
            if not self._dirty:
                return
            self._dirty = False
            try:
                self.last_result = await self._save()
                self.last_error = None
                self.save_count += 1
            except AdWizardException as exc:
                logger.warning("Debounced save failed: %s", exc.message)
                self.last_error = exc
