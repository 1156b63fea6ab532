"""Job queue semantics layered over a pluggable job store.

Delivery is at-least-once: a claimed job whose lock expires (worker crash) returns to
the ready set, so stage handlers must tolerate re-execution.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from coursegen.ai.backoff import BackoffScheduler
from coursegen.jobs.models import JobPayload, JobRecord, JobState, JobType, LIVE_STATES, dump_payload, parse_payload
from coursegen.storage.jobs_repo import JobStore
from coursegen.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 4000


@dataclass(frozen=True)
class RetentionPolicy:
  """Keep terminal jobs no longer than `age_seconds` and no more than `count`."""

  age_seconds: int
  count: int


@dataclass(frozen=True)
class QueueOptions:
  max_attempts: int = 5
  default_delay_ms: int = 1000
  lock_seconds: int = 900
  completed_retention: RetentionPolicy = field(default_factory=lambda: RetentionPolicy(age_seconds=7 * 24 * 3600, count=50))
  failed_retention: RetentionPolicy = field(default_factory=lambda: RetentionPolicy(age_seconds=14 * 24 * 3600, count=100))


class JobQueue:
  """Enqueue, claim, acknowledge and fail pipeline jobs."""

  def __init__(self, *, store: JobStore, scheduler: BackoffScheduler, options: QueueOptions | None = None, clock: Clock = utc_now) -> None:
    self._store = store
    self._scheduler = scheduler
    self._options = options or QueueOptions()
    self._clock = clock
    self._wakeup = asyncio.Event()

  @property
  def options(self) -> QueueOptions:
    return self._options

  async def enqueue(self, job_type: JobType, payload: JobPayload | Mapping[str, Any], *, delay_ms: int | None = None, max_attempts: int | None = None, idempotency_key: str | None = None) -> JobRecord:
    """Validate the payload for its job type and persist a waiting/delayed job."""
    raw = dump_payload(payload) if not isinstance(payload, Mapping) else {"job_type": job_type, **payload}
    typed = parse_payload(raw)
    if typed.job_type != job_type:
      raise ValueError(f"Payload job_type {typed.job_type!r} does not match {job_type!r}")

    now = self._clock()
    delay = self._options.default_delay_ms if delay_ms is None else max(delay_ms, 0)
    record = JobRecord(
      job_id=str(uuid.uuid4()),
      job_type=job_type,
      workflow_id=typed.workflow_id,
      payload=dump_payload(typed),
      state="delayed" if delay > 0 else "waiting",
      attempts_made=0,
      max_attempts=max_attempts or self._options.max_attempts,
      next_run_at=now + timedelta(milliseconds=delay),
      created_at=now,
      updated_at=now,
      idempotency_key=idempotency_key,
    )
    stored = await self._store.insert(record)
    if stored.job_id != record.job_id:
      logger.info("Skipped duplicate %s job for key=%s; live job %s already queued", job_type, idempotency_key, stored.job_id)
      return stored

    logger.info("Enqueued %s job %s workflow=%s delay_ms=%d", job_type, stored.job_id, stored.workflow_id, delay)
    self._wakeup.set()
    return stored

  async def next(self, job_types: Collection[str] | None = None) -> JobRecord | None:
    """Claim the oldest ready job, or None when nothing is due."""
    now = self._clock()
    lock_until = now + timedelta(seconds=self._options.lock_seconds)
    job = await self._store.claim_next(now=now, lock_until=lock_until, job_types=job_types)
    if job is not None:
      logger.debug("Claimed %s job %s attempt=%d", job.job_type, job.job_id, job.attempts_made + 1)
    return job

  async def wait_for_work(self, timeout: float) -> None:
    """Sleep until an in-process enqueue happens or the timeout passes."""
    try:
      await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
    except TimeoutError:
      pass
    finally:
      self._wakeup.clear()

  async def ack(self, job: JobRecord, result: Mapping[str, Any] | None = None) -> JobRecord:
    now = self._clock()
    job.state = "completed"
    job.finished_at = now
    job.updated_at = now
    job.locked_until = None
    job.result = dict(result) if result is not None else None
    saved = await self._store.save(job)
    logger.info("Completed %s job %s workflow=%s", job.job_type, job.job_id, job.workflow_id)
    return saved

  async def fail(self, job: JobRecord, error: BaseException, *, retryable: bool = True) -> JobRecord:
    """Count the failed attempt; schedule a retry via the backoff scheduler or fail the job."""
    now = self._clock()
    job.attempts_made += 1
    job.last_error = (str(error) or type(error).__name__)[:_MAX_ERROR_CHARS]
    job.locked_until = None
    job.updated_at = now

    if retryable and job.attempts_made < job.max_attempts:
      delay_ms = await self._scheduler.compute_delay_ms(job.attempts_made, job.job_type, error)
      job.state = "delayed"
      job.next_run_at = now + timedelta(milliseconds=delay_ms)
      saved = await self._store.save(job)
      logger.info("Retrying %s job %s in %dms (attempt %d/%d)", job.job_type, job.job_id, delay_ms, job.attempts_made, job.max_attempts)
      return saved

    job.state = "failed"
    job.finished_at = now
    saved = await self._store.save(job)
    reason = "retry budget exhausted" if retryable else "non-retryable error"
    logger.warning("Failed %s job %s after %d attempt(s): %s (%s)", job.job_type, job.job_id, job.attempts_made, job.last_error, reason)
    return saved

  async def get(self, job_id: str) -> JobRecord | None:
    return await self._store.get(job_id)

  async def retry(self, job_id: str) -> JobRecord:
    """Move a failed job back to waiting with a fresh attempt budget."""
    job = await self._store.get(job_id)
    if job is None:
      raise LookupError(f"Job not found: {job_id}")
    if job.state != "failed":
      raise ValueError(f"Only failed jobs can be retried (job {job_id} is {job.state})")

    now = self._clock()
    job.state = "waiting"
    job.attempts_made = 0
    job.next_run_at = now
    job.finished_at = None
    job.updated_at = now
    saved = await self._store.save(job)
    logger.info("Manually retried %s job %s", job.job_type, job.job_id)
    self._wakeup.set()
    return saved

  async def remove(self, job_id: str) -> bool:
    removed = await self._store.delete(job_id)
    if removed:
      logger.info("Removed job %s", job_id)
    return removed

  async def clear(self, state: JobState | None = None) -> int:
    removed = await self._store.delete_by_state(state)
    logger.info("Cleared %d job(s) state=%s", removed, state or "all")
    return removed

  async def list_jobs(self, *, states: Collection[str] | None = None, workflow_id: str | None = None, limit: int = 50, offset: int = 0) -> list[JobRecord]:
    return await self._store.list_jobs(states=states, workflow_id=workflow_id, limit=limit, offset=offset)

  async def counts(self, workflow_id: str | None = None) -> dict[str, int]:
    return await self._store.count_by_state(workflow_id=workflow_id)

  async def outstanding(self, workflow_id: str) -> int:
    """Jobs for the workflow that have not reached a terminal state."""
    counts = await self._store.count_by_state(workflow_id=workflow_id)
    return sum(counts.get(state, 0) for state in LIVE_STATES)

  async def requeue_stalled(self) -> list[JobRecord]:
    """Release jobs whose worker lock lapsed; each lapse counts as an attempt."""
    stalled = await self._store.requeue_stalled(now=self._clock())
    for job in stalled:
      if job.state == "failed":
        logger.warning("Failed stalled %s job %s: %s", job.job_type, job.job_id, job.last_error)
    requeued = sum(1 for job in stalled if job.state == "waiting")
    if requeued:
      logger.warning("Requeued %d stalled job(s)", requeued)
      self._wakeup.set()
    return stalled

  async def purge_expired(self) -> int:
    """Apply the completed/failed retention policies."""
    now = self._clock()
    purged = 0
    for state, policy in (("completed", self._options.completed_retention), ("failed", self._options.failed_retention)):
      purged += await self._store.purge(state=state, finished_before=now - timedelta(seconds=policy.age_seconds), keep_latest=policy.count)
    if purged:
      logger.info("Purged %d terminal job(s) past retention", purged)
    return purged

  def notify(self) -> None:
    """Wake every coroutine blocked in wait_for_work."""
    self._wakeup.set()
