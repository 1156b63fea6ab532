"""Job store contract and an in-memory implementation."""

from __future__ import annotations

import asyncio
from collections.abc import Collection
from dataclasses import replace
from datetime import datetime
from typing import Any, Protocol

from coursegen.jobs.models import JOB_STATES, LIVE_STATES, JobRecord, JobState

_READY_STATES = ("waiting", "delayed")


def release_stalled(job: Any, now: datetime) -> None:
  """Charge the lapsed claim as an attempt and requeue the job, or fail it when none remain.

  Works on anything shaped like a job row, so the in-memory record and the ORM model share it.
  """
  job.attempts_made += 1
  job.locked_until = None
  job.updated_at = now
  if job.attempts_made >= job.max_attempts:
    job.state = "failed"
    job.finished_at = now
    job.last_error = f"Worker lock expired after {job.attempts_made} attempt(s)"
    return
  job.state = "waiting"
  job.next_run_at = now


class JobStore(Protocol):
  """Persistence primitives the job queue is built on."""

  async def insert(self, record: JobRecord) -> JobRecord:
    """Persist a new job; returns the existing live job when the idempotency key is taken."""

  async def get(self, job_id: str) -> JobRecord | None:
    """Fetch a job by id."""

  async def claim_next(self, *, now: datetime, lock_until: datetime, job_types: Collection[str] | None = None) -> JobRecord | None:
    """Atomically move the oldest ready job to active."""

  async def save(self, record: JobRecord) -> JobRecord:
    """Write back every mutable field of a job."""

  async def delete(self, job_id: str) -> bool:
    """Remove one job."""

  async def delete_by_state(self, state: JobState | None = None) -> int:
    """Remove jobs in a state (all jobs when None)."""

  async def list_jobs(self, *, states: Collection[str] | None = None, workflow_id: str | None = None, limit: int = 50, offset: int = 0) -> list[JobRecord]:
    """List jobs newest first."""

  async def count_by_state(self, *, workflow_id: str | None = None) -> dict[str, int]:
    """Count jobs per state."""

  async def requeue_stalled(self, *, now: datetime) -> list[JobRecord]:
    """Count an attempt for each active job whose lock expired; requeue it, or fail it once the budget is spent."""

  async def purge(self, *, state: JobState, finished_before: datetime, keep_latest: int) -> int:
    """Delete terminal jobs older than the cutoff or beyond the newest `keep_latest`."""


class InMemoryJobStore(JobStore):
  """Process-local job store for the memory storage mode and tests."""

  def __init__(self) -> None:
    self._jobs: dict[str, JobRecord] = {}
    self._seq = 0
    self._lock = asyncio.Lock()

  async def insert(self, record: JobRecord) -> JobRecord:
    async with self._lock:
      if record.idempotency_key:
        for existing in self._jobs.values():
          if existing.idempotency_key == record.idempotency_key and existing.state in LIVE_STATES:
            return replace(existing)
      self._seq += 1
      stored = replace(record, seq=self._seq)
      self._jobs[stored.job_id] = stored
      return replace(stored)

  async def get(self, job_id: str) -> JobRecord | None:
    record = self._jobs.get(job_id)
    return replace(record) if record else None

  async def claim_next(self, *, now: datetime, lock_until: datetime, job_types: Collection[str] | None = None) -> JobRecord | None:
    async with self._lock:
      ready = [job for job in self._jobs.values() if job.state in _READY_STATES and job.next_run_at <= now and (job_types is None or job.job_type in job_types)]
      if not ready:
        return None
      job = min(ready, key=lambda item: (item.next_run_at, item.seq))
      job.state = "active"
      job.started_at = now
      job.locked_until = lock_until
      job.updated_at = now
      return replace(job)

  async def save(self, record: JobRecord) -> JobRecord:
    async with self._lock:
      if record.job_id not in self._jobs:
        raise LookupError(f"Job not found: {record.job_id}")
      self._jobs[record.job_id] = replace(record)
      return replace(record)

  async def delete(self, job_id: str) -> bool:
    async with self._lock:
      return self._jobs.pop(job_id, None) is not None

  async def delete_by_state(self, state: JobState | None = None) -> int:
    async with self._lock:
      doomed = [job_id for job_id, job in self._jobs.items() if state is None or job.state == state]
      for job_id in doomed:
        del self._jobs[job_id]
      return len(doomed)

  async def list_jobs(self, *, states: Collection[str] | None = None, workflow_id: str | None = None, limit: int = 50, offset: int = 0) -> list[JobRecord]:
    matches = [job for job in self._jobs.values() if (states is None or job.state in states) and (workflow_id is None or job.workflow_id == workflow_id)]
    matches.sort(key=lambda item: item.seq, reverse=True)
    return [replace(job) for job in matches[offset : offset + limit]]

  async def count_by_state(self, *, workflow_id: str | None = None) -> dict[str, int]:
    counts = dict.fromkeys(JOB_STATES, 0)
    for job in self._jobs.values():
      if workflow_id is None or job.workflow_id == workflow_id:
        counts[job.state] += 1
    return counts

  async def requeue_stalled(self, *, now: datetime) -> list[JobRecord]:
    async with self._lock:
      stalled = [job for job in self._jobs.values() if job.state == "active" and job.locked_until is not None and job.locked_until < now]
      for job in stalled:
        release_stalled(job, now)
      return [replace(job) for job in stalled]

  async def purge(self, *, state: JobState, finished_before: datetime, keep_latest: int) -> int:
    async with self._lock:
      terminal = sorted((job for job in self._jobs.values() if job.state == state), key=lambda item: (item.finished_at or item.updated_at, item.seq), reverse=True)
      doomed = [job.job_id for index, job in enumerate(terminal) if index >= keep_latest or (job.finished_at or job.updated_at) < finished_before]
      for job_id in doomed:
        del self._jobs[job_id]
      return len(doomed)
