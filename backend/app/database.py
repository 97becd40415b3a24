"""Database engine, session factory, and declarative base.

The progress store, lock manager and backup writer each open short-lived
sessions from `async_session` so every conditional write commits on its
own.  Routers never hold a session across a save; they receive the
factory through `get_session_factory()` (overridden in tests).
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

_engine_kwargs = {"echo": settings.debug}
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs.update(pool_size=20, max_overflow=10)

engine = create_async_engine(settings.database_url, **_engine_kwargs)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


class Base(DeclarativeBase):
    """Declarative base for all wizard tables."""
    pass


# ── Dependencies ────────────────────────────────────────────

def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory used by stores and lock managers."""
    return async_session

