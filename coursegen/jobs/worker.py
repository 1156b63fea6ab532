"""Concurrent worker pool that drains the job queue."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from coursegen.ai.errors import RateLimitCondition, TransientInfrastructureError, classify_failure, is_retryable_category
from coursegen.jobs.dispatch import StageRegistry
from coursegen.jobs.models import InvalidJobPayloadError, JobRecord
from coursegen.jobs.queue import JobQueue
from coursegen.pipeline.status import WorkflowStatusTracker
from coursegen.ratelimit.store import RateLimitStore


class WorkerPool:
  """Run up to `concurrency` stage handlers at once.

  Rate-limit conditions go back to the queue as retryable failures so the backoff
  scheduler can align the next attempt with the provider window; the owning course is
  only marked FAILED once a job fails terminally.
  """

  def __init__(
    self,
    *,
    queue: JobQueue,
    registry: StageRegistry,
    tracker: WorkflowStatusTracker,
    rate_limits: RateLimitStore | None = None,
    concurrency: int = 3,
    poll_seconds: float = 2.0,
    maintenance_seconds: float = 60.0,
  ) -> None:
    if concurrency < 1:
      raise ValueError("concurrency must be at least 1")
    self._queue = queue
    self._registry = registry
    self._tracker = tracker
    self._rate_limits = rate_limits
    self._concurrency = concurrency
    self._poll_seconds = poll_seconds
    self._maintenance_seconds = maintenance_seconds
    self._logger = logging.getLogger(__name__)
    self._tasks: list[asyncio.Task[None]] = []
    self._stopping = asyncio.Event()
    self._in_flight = 0

  @property
  def running(self) -> bool:
    return bool(self._tasks) and not self._stopping.is_set()

  @property
  def in_flight(self) -> int:
    return self._in_flight

  def start(self) -> None:
    """Spawn the worker and maintenance loops on the running event loop."""
    if self._tasks:
      return
    self._stopping.clear()
    self._tasks = [asyncio.create_task(self._worker_loop(index), name=f"coursegen-worker-{index}") for index in range(self._concurrency)]
    self._tasks.append(asyncio.create_task(self._maintenance_loop(), name="coursegen-worker-maintenance"))
    self._logger.info("Worker pool started concurrency=%d job_types=%s", self._concurrency, ",".join(self._registry.job_types()))

  async def stop(self, *, grace_seconds: float = 30.0) -> None:
    """Stop claiming jobs and let in-flight handlers finish within the grace period."""
    if not self._tasks:
      return
    self._stopping.set()
    self._queue.notify()
    done, pending = await asyncio.wait(self._tasks, timeout=grace_seconds)
    for task in pending:
      task.cancel()
    if pending:
      self._logger.warning("Cancelled %d worker task(s) after %.0fs grace period", len(pending), grace_seconds)
      await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
      if not task.cancelled() and task.exception() is not None:
        self._logger.error("Worker task %s exited with error", task.get_name(), exc_info=task.exception())
    self._tasks = []
    self._logger.info("Worker pool stopped")

  async def _worker_loop(self, index: int) -> None:
    while not self._stopping.is_set():
      try:
        job = await self.run_once()
      except Exception:  # noqa: BLE001
        # The claimed job's lock will lapse and requeue_stalled hands it back out.
        self._logger.error("Worker %d iteration failed", index, exc_info=True)
        job = None
      if job is None and not self._stopping.is_set():
        await self._queue.wait_for_work(self._poll_seconds)

  async def _maintenance_loop(self) -> None:
    while not self._stopping.is_set():
      await self.run_maintenance()
      try:
        await asyncio.wait_for(self._stopping.wait(), timeout=self._maintenance_seconds)
      except TimeoutError:
        pass

  async def run_maintenance(self) -> None:
    try:
      await self.release_stalled()
      await self._queue.purge_expired()
    except Exception:  # noqa: BLE001
      self._logger.error("Queue maintenance failed", exc_info=True)

    if self._rate_limits is not None:
      await self._rate_limits.reconcile_expired()

  async def release_stalled(self) -> list[JobRecord]:
    """Requeue jobs whose lock lapsed and fail the workflows of those out of attempts."""
    stalled = await self._queue.requeue_stalled()
    for job in stalled:
      if job.state == "failed":
        await self._tracker.failed(job, TransientInfrastructureError(job.last_error or "worker lock expired"))
    return stalled

  async def run_once(self) -> JobRecord | None:
    """Claim and process a single ready job; returns it, or None when idle."""
    job = await self._queue.next(self._registry.job_types())
    if job is None:
      return None
    self._in_flight += 1
    try:
      await self._process(job)
    finally:
      self._in_flight -= 1
    return job

  async def drain(self, *, max_jobs: int = 1000) -> int:
    """Process ready jobs until none is due; returns how many ran."""
    processed = 0
    while processed < max_jobs:
      if await self.run_once() is None:
        break
      processed += 1
    return processed

  async def _process(self, job: JobRecord) -> None:
    try:
      payload = job.typed_payload()
    except InvalidJobPayloadError as exc:
      self._logger.error("Rejecting %s job %s with invalid payload: %s", job.job_type, job.job_id, exc)
      await self._queue.fail(job, exc, retryable=False)
      return

    try:
      if await self._tracker.begin(job) == "workflow_failed":
        await self._queue.ack(job, {"skipped": "workflow_failed"})
        return
      handler = self._registry.resolve(job.job_type)
      result: Mapping[str, Any] = await handler.process(job, payload)
    except RateLimitCondition as exc:
      self._logger.info("Job %s (%s) deferred: %s", job.job_id, job.job_type, exc)
      saved = await self._queue.fail(job, exc, retryable=True)
      if saved.state == "failed":
        await self._tracker.failed(saved, exc)
      return
    except Exception as exc:  # noqa: BLE001
      category = classify_failure(exc)
      retryable = is_retryable_category(category)
      self._logger.error("Job %s (%s) failed with %s error", job.job_id, job.job_type, category, exc_info=True)
      saved = await self._queue.fail(job, exc, retryable=retryable)
      if saved.state == "failed":
        await self._tracker.failed(saved, exc)
      return

    await self._queue.ack(job, result)
    await self._tracker.succeeded(job)
