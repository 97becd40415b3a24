"""Copies of anonymous payloads taken before a migration mutates anything."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.utils.clock import utcnow


class DataBackup(Base):
    __tablename__ = "data_backups"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    session_id: Mapped[str | None] = mapped_column(String(64))
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    backup_type: Mapped[str] = mapped_column(String(32), default="migration")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
