"""Optimistic-concurrency saves for authenticated wizard progress.

A save lands only through `UPDATE ... WHERE user_id = ? AND version = ?`.
When that matches no row, a concurrent writer got there first: the engine
re-reads the stored version, waits `base_delay * 2**attempt`, and applies
the same partial data on top of the newer row.  After `max_retries`
retries the save is abandoned with `FatalSaveError`; nothing is ever
written against a stale version.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from app.middleware.exceptions import (
    ConflictError,
    FatalSaveError,
    TransientStoreError,
)
from app.services.progress import clamp_step, parse_wizard_data, payload_fields
from app.services.progress_store import ProgressStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0


@dataclass
class SaveResult:
    success: bool
    new_version: int
    attempts: int


class VersionedSaveEngine:
    def __init__(
        self,
        store: ProgressStore,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    async def save(self, user_id: str, partial_data: Any, expected_version: int) -> SaveResult:
        """Write `partial_data` for `user_id` if the stored version is `expected_version`.

        Raises WizardValidationError before touching the store when the
        payload is malformed, and FatalSaveError once retries run out.
        """
        data = parse_wizard_data(partial_data)
        fields = payload_fields(data)
        if data.current_step is not None:
            fields["current_step"] = clamp_step(data.current_step)

        version = expected_version
        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            try:
                record = await self.store.get_progress(user_id)
                if record is None:
                    await self.store.insert_progress(user_id, fields)
                    logger.info("Created wizard progress for user %s", user_id)
                    return SaveResult(success=True, new_version=1, attempts=attempt + 1)

                updated = await self.store.update_progress(user_id, fields, version)
                if updated is not None:
                    logger.debug(
                        "Saved wizard progress for user %s: v%d -> v%d",
                        user_id, version, updated.version,
                    )
                    return SaveResult(
                        success=True, new_version=updated.version, attempts=attempt + 1
                    )

                last_error = ConflictError(
                    f"Version {version} is stale (stored v{record.version})"
                )
            except ConflictError as exc:
                # Lost an insert race: the row exists now
                last_error = exc
            except TransientStoreError as exc:
                last_error = exc

            if attempt >= self.max_retries:
                break

            logger.info(
                "Save conflict for user %s (%s), retry %d/%d",
                user_id, last_error, attempt + 1, self.max_retries,
            )
            await self._sleep(self.base_delay * (2 ** attempt))
            version = await self._current_version(user_id, fallback=version)

        logger.error(
            "Abandoning save for user %s after %d attempts: %s",
            user_id, self.max_retries + 1, last_error,
        )
        raise FatalSaveError(attempts=self.max_retries + 1) from last_error

    async def _current_version(self, user_id: str, fallback: int) -> int:
        try:
            record = await self.store.get_progress(user_id)
        except TransientStoreError:
            return fallback
        return record.version if record else 0
