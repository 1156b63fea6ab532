"""Postgres-backed rate-limit audit repository using SQLAlchemy."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert

from coursegen.core.database import SessionFactory
from coursegen.ratelimit.audit_repo import RateLimitAuditRecord, RateLimitAuditRepository
from coursegen.schema.rate_limits import AIRateLimit


class PostgresRateLimitAuditRepository(RateLimitAuditRepository):
  """Persist rate-limit audit rows to Postgres."""

  def __init__(self, session_factory: SessionFactory) -> None:
    self._session_factory = session_factory

  async def record_hit(self, *, provider: str, model_id: str, timeout_until: datetime, hit_at: datetime) -> RateLimitAuditRecord:
    async with self._session_factory() as session:
      stmt = insert(AIRateLimit).values(provider=provider, model_id=model_id, is_active=True, timeout_until=timeout_until, hit_count=1, first_hit_at=hit_at, last_hit_at=hit_at)
      # Concurrent writers converge on one row per pair; last writer sets the deadline.
      stmt = stmt.on_conflict_do_update(
        index_elements=[AIRateLimit.provider, AIRateLimit.model_id],
        set_={"is_active": True, "timeout_until": timeout_until, "hit_count": AIRateLimit.hit_count + 1, "last_hit_at": hit_at, "cleared_at": None},
      ).returning(AIRateLimit)
      result = await session.execute(stmt)
      row = result.scalar_one()
      await session.commit()
      return self._model_to_record(row)

  async def mark_inactive(self, *, provider: str, model_id: str, cleared_at: datetime) -> int:
    async with self._session_factory() as session:
      stmt = update(AIRateLimit).where(AIRateLimit.provider == provider, AIRateLimit.model_id == model_id, AIRateLimit.is_active.is_(True)).values(is_active=False, cleared_at=cleared_at)
      result = await session.execute(stmt)
      await session.commit()
      return int(result.rowcount or 0)

  async def mark_all_inactive(self, *, cleared_at: datetime) -> int:
    async with self._session_factory() as session:
      result = await session.execute(update(AIRateLimit).where(AIRateLimit.is_active.is_(True)).values(is_active=False, cleared_at=cleared_at))
      await session.commit()
      return int(result.rowcount or 0)

  async def mark_expired(self, *, now: datetime) -> int:
    async with self._session_factory() as session:
      stmt = update(AIRateLimit).where(AIRateLimit.is_active.is_(True), AIRateLimit.timeout_until <= now).values(is_active=False, cleared_at=AIRateLimit.timeout_until)
      result = await session.execute(stmt)
      await session.commit()
      return int(result.rowcount or 0)

  async def list_recent(self, *, limit: int = 50) -> list[RateLimitAuditRecord]:
    async with self._session_factory() as session:
      result = await session.execute(select(AIRateLimit).order_by(AIRateLimit.last_hit_at.desc()).limit(limit))
      return [self._model_to_record(row) for row in result.scalars().all()]

  def _model_to_record(self, row: AIRateLimit) -> RateLimitAuditRecord:
    return RateLimitAuditRecord(
      provider=row.provider,
      model_id=row.model_id,
      is_active=row.is_active,
      timeout_until=row.timeout_until,
      hit_count=row.hit_count,
      first_hit_at=row.first_hit_at,
      last_hit_at=row.last_hit_at,
      cleared_at=row.cleared_at,
    )
