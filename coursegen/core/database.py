"""SQLAlchemy async engine and session lifecycle."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from coursegen.config import DatabaseSettings

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


class Base(DeclarativeBase):
  pass


def database_url(pg_dsn: str | None) -> str | None:
  """Rewrite plain Postgres DSNs to the asyncpg driver."""
  if pg_dsn and pg_dsn.startswith("postgresql://"):
    return pg_dsn.replace("postgresql://", "postgresql+asyncpg://", 1)

  return pg_dsn


class Database:
  """Own the engine and session factory for one process."""

  def __init__(self, settings: DatabaseSettings) -> None:
    self._settings = settings
    self._engine: AsyncEngine | None = None
    self._session_factory: async_sessionmaker[AsyncSession] | None = None

  @property
  def is_open(self) -> bool:
    return self._engine is not None

  async def open(self) -> None:
    """Create the engine; safe to call more than once."""
    if self._engine is not None:
      return

    url = database_url(self._settings.pg_dsn)
    if not url:
      raise RuntimeError("Database connection is not configured (COURSEGEN_PG_DSN is missing).")

    connect_args = {"timeout": self._settings.pg_connect_timeout} if url.startswith("postgresql+asyncpg://") else {}
    self._engine = create_async_engine(url, echo=self._settings.debug, pool_pre_ping=True, connect_args=connect_args)
    self._session_factory = async_sessionmaker(bind=self._engine, expire_on_commit=False, class_=AsyncSession)
    logger.info("Database engine created.")

  async def close(self) -> None:
    if self._engine is None:
      return

    await self._engine.dispose()
    self._engine = None
    self._session_factory = None
    logger.info("Database engine disposed.")

  @property
  def engine(self) -> AsyncEngine:
    if self._engine is None:
      raise RuntimeError("Database is not open.")
    return self._engine

  @property
  def session_factory(self) -> async_sessionmaker[AsyncSession]:
    if self._session_factory is None:
      raise RuntimeError("Database is not open.")
    return self._session_factory

  def new_session(self) -> AsyncSession:
    """Open a session from the current engine."""
    return self.session_factory()

  async def session(self) -> AsyncGenerator[AsyncSession]:
    """Yield a session; usable as a FastAPI dependency."""
    async with self.session_factory() as session:
      try:
        yield session
      finally:
        await session.close()
