"""Postgres-backed job store using SQLAlchemy."""

from __future__ import annotations

from collections.abc import Collection
from datetime import datetime

from sqlalchemy import delete, func, or_, select, text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from coursegen.core.database import SessionFactory
from coursegen.jobs.models import JOB_STATES, LIVE_STATES, JobRecord, JobState
from coursegen.schema.jobs import PipelineJob
from coursegen.storage.jobs_repo import JobStore, release_stalled

_LIVE_INDEX_WHERE = text("idempotency_key IS NOT NULL AND state IN ('waiting', 'delayed', 'active')")


class PostgresJobStore(JobStore):
  """Persist pipeline jobs to Postgres; claims use SKIP LOCKED so workers never share a job."""

  def __init__(self, session_factory: SessionFactory) -> None:
    self._session_factory = session_factory

  async def insert(self, record: JobRecord) -> JobRecord:
    async with self._session_factory() as session:
      stmt = insert(PipelineJob).values(
        job_id=record.job_id,
        job_type=record.job_type,
        workflow_id=record.workflow_id,
        payload_json=record.payload,
        state=record.state,
        attempts_made=record.attempts_made,
        max_attempts=record.max_attempts,
        next_run_at=record.next_run_at,
        idempotency_key=record.idempotency_key,
        created_at=record.created_at,
        updated_at=record.updated_at,
      )
      if record.idempotency_key:
        stmt = stmt.on_conflict_do_nothing(index_elements=[PipelineJob.idempotency_key], index_where=_LIVE_INDEX_WHERE)
      result = await session.execute(stmt.returning(PipelineJob.seq))
      seq = result.scalar_one_or_none()
      await session.commit()
      if seq is not None:
        record.seq = int(seq)
        return record

      # Another live job already owns the idempotency key.
      existing = await session.execute(select(PipelineJob).where(PipelineJob.idempotency_key == record.idempotency_key, PipelineJob.state.in_(LIVE_STATES)).limit(1))
      row = existing.scalar_one_or_none()
      if row is None:
        raise RuntimeError(f"Idempotency conflict without a live job for key {record.idempotency_key}")
      return self._model_to_record(row)

  async def get(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await self._get_row(session, job_id)
      return self._model_to_record(row) if row else None

  async def claim_next(self, *, now: datetime, lock_until: datetime, job_types: Collection[str] | None = None) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = select(PipelineJob).where(PipelineJob.state.in_(("waiting", "delayed")), PipelineJob.next_run_at <= now)
      if job_types is not None:
        stmt = stmt.where(PipelineJob.job_type.in_(list(job_types)))
      stmt = stmt.order_by(PipelineJob.next_run_at, PipelineJob.seq).limit(1).with_for_update(skip_locked=True)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None

      row.state = "active"
      row.started_at = now
      row.locked_until = lock_until
      row.updated_at = now
      await session.commit()
      return self._model_to_record(row)

  async def save(self, record: JobRecord) -> JobRecord:
    async with self._session_factory() as session:
      row = await self._get_row(session, record.job_id)
      if row is None:
        raise LookupError(f"Job not found: {record.job_id}")

      row.state = record.state
      row.attempts_made = record.attempts_made
      row.max_attempts = record.max_attempts
      row.next_run_at = record.next_run_at
      row.locked_until = record.locked_until
      row.last_error = record.last_error
      row.result_json = record.result
      row.started_at = record.started_at
      row.finished_at = record.finished_at
      row.updated_at = record.updated_at
      await session.commit()
      return self._model_to_record(row)

  async def delete(self, job_id: str) -> bool:
    async with self._session_factory() as session:
      result = await session.execute(delete(PipelineJob).where(PipelineJob.job_id == job_id))
      await session.commit()
      return bool(result.rowcount)

  async def delete_by_state(self, state: JobState | None = None) -> int:
    async with self._session_factory() as session:
      stmt = delete(PipelineJob)
      if state is not None:
        stmt = stmt.where(PipelineJob.state == state)
      result = await session.execute(stmt)
      await session.commit()
      return int(result.rowcount or 0)

  async def list_jobs(self, *, states: Collection[str] | None = None, workflow_id: str | None = None, limit: int = 50, offset: int = 0) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(PipelineJob)
      if states is not None:
        stmt = stmt.where(PipelineJob.state.in_(list(states)))
      if workflow_id is not None:
        stmt = stmt.where(PipelineJob.workflow_id == workflow_id)
      stmt = stmt.order_by(PipelineJob.seq.desc()).limit(limit).offset(offset)
      result = await session.execute(stmt)
      return [self._model_to_record(row) for row in result.scalars().all()]

  async def count_by_state(self, *, workflow_id: str | None = None) -> dict[str, int]:
    async with self._session_factory() as session:
      stmt = select(PipelineJob.state, func.count()).group_by(PipelineJob.state)
      if workflow_id is not None:
        stmt = stmt.where(PipelineJob.workflow_id == workflow_id)
      result = await session.execute(stmt)
      counts = dict.fromkeys(JOB_STATES, 0)
      for state, count in result.all():
        counts[str(state)] = int(count)
      return counts

  async def requeue_stalled(self, *, now: datetime) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(PipelineJob).where(PipelineJob.state == "active", PipelineJob.locked_until < now).with_for_update(skip_locked=True)
      rows = list((await session.execute(stmt)).scalars().all())
      for row in rows:
        release_stalled(row, now)
      await session.commit()
      return [self._model_to_record(row) for row in rows]

  async def purge(self, *, state: JobState, finished_before: datetime, keep_latest: int) -> int:
    async with self._session_factory() as session:
      finished = func.coalesce(PipelineJob.finished_at, PipelineJob.updated_at)
      overflow = select(PipelineJob.seq).where(PipelineJob.state == state).order_by(finished.desc(), PipelineJob.seq.desc()).offset(keep_latest).scalar_subquery()
      stmt = delete(PipelineJob).where(PipelineJob.state == state, or_(finished < finished_before, PipelineJob.seq.in_(overflow)))
      result = await session.execute(stmt)
      await session.commit()
      return int(result.rowcount or 0)

  async def _get_row(self, session: AsyncSession, job_id: str) -> PipelineJob | None:
    result = await session.execute(select(PipelineJob).where(PipelineJob.job_id == job_id))
    return result.scalar_one_or_none()

  def _model_to_record(self, row: PipelineJob) -> JobRecord:
    return JobRecord(
      job_id=row.job_id,
      job_type=row.job_type,  # type: ignore[arg-type]
      workflow_id=row.workflow_id,
      payload=dict(row.payload_json or {}),
      state=row.state,  # type: ignore[arg-type]
      attempts_made=row.attempts_made,
      max_attempts=row.max_attempts,
      next_run_at=row.next_run_at,
      created_at=row.created_at,
      updated_at=row.updated_at,
      seq=row.seq,
      started_at=row.started_at,
      finished_at=row.finished_at,
      locked_until=row.locked_until,
      last_error=row.last_error,
      result=row.result_json,
      idempotency_key=row.idempotency_key,
    )
