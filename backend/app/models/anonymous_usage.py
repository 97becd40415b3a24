"""Progress and trial usage for anonymous sessions.

Keyed by the client-generated session id.  Rows are never deleted: once a
session has been merged into a user account, `migrated_user_id` and
`migrated_at` are set and the row stays as a closed historical record.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.utils.clock import utcnow


class AnonymousUsage(Base):
    __tablename__ = "anonymous_usage"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Trial consumption (single generation) and migration cleanup
    used: Mapped[bool] = mapped_column(Boolean, default=False)
    completed: Mapped[bool] = mapped_column(Boolean, default=False)

    wizard_data: Mapped[dict] = mapped_column(JSON, default=dict)
    last_completed_step: Mapped[int] = mapped_column(Integer, default=1)

    save_count: Mapped[int] = mapped_column(Integer, default=0)
    last_save_attempt: Mapped[datetime | None] = mapped_column(DateTime, default=None)

    migrated_user_id: Mapped[str | None] = mapped_column(String(64), default=None, index=True)
    migrated_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )
