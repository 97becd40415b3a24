"""Wizard progress for authenticated users.

One row per user.  `version` is the optimistic-concurrency gate: a write
only lands when the caller's version matches the stored one, and the
stored version then becomes caller + 1.  `is_migration` / `migration_token`
record that the row received data from an anonymous session; the token is
the id of that session.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.utils.clock import utcnow


class WizardProgress(Base):
    __tablename__ = "wizard_progress"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Opaque step payloads owned by the UI layer
    business_idea: Mapped[dict | None] = mapped_column(JSON, default=None)
    target_audience: Mapped[dict | None] = mapped_column(JSON, default=None)
    audience_analysis: Mapped[dict | None] = mapped_column(JSON, default=None)
    generated_ads: Mapped[list | None] = mapped_column(JSON, default=None)
    selected_hooks: Mapped[list | None] = mapped_column(JSON, default=None)

    current_step: Mapped[int] = mapped_column(Integer, default=1)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    is_migration: Mapped[bool] = mapped_column(Boolean, default=False)
    migration_token: Mapped[str | None] = mapped_column(String(64), default=None)

    last_save_attempt: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )
