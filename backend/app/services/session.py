"""Who is driving the wizard: an authenticated user, an anonymous session, or both.

`SessionContext` is passed explicitly to the wizard and the migration
coordinator.  Both ids present at once is the "just signed in with an
anonymous session still on the client" situation that triggers migration.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace

from app.services.progress_store import ProgressStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionContext:
    user_id: str | None = None
    session_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    @property
    def is_anonymous(self) -> bool:
        return not self.user_id and bool(self.session_id)

    @property
    def needs_migration(self) -> bool:
        return bool(self.user_id and self.session_id)

    def without_session(self) -> SessionContext:
        """Context after the client forgot its anonymous session id."""
        return replace(self, session_id=None)


async def start_anonymous_session(store: ProgressStore) -> str:
    """Create the usage row for a fresh anonymous visitor and return its id."""
    session_id = str(uuid.uuid4())
    await store.create_anonymous(session_id)
    logger.info("Started anonymous session %s", session_id)
    return session_id
