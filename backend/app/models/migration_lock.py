"""Expiring lock rows used for cross-process mutual exclusion.

At most one row per (user_id, lock_type), enforced by a unique
constraint; acquiring a lock is an INSERT that either lands or violates
it.  `token` is handed to the holder and scopes release/renewal.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.utils.clock import utcnow


class MigrationLock(Base):
    __tablename__ = "migration_locks"
    __table_args__ = (
        UniqueConstraint("user_id", "lock_type", name="uq_migration_locks_owner_type"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lock_type: Mapped[str] = mapped_column(String(64), nullable=False)
    token: Mapped[str] = mapped_column(String(36), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    # "metadata" is reserved on declarative classes
    lock_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
