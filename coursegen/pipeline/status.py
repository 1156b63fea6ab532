"""Workflow-level GenerationStatus transitions driven by the worker pool."""

from __future__ import annotations

import logging
from typing import Literal

from coursegen.ai.errors import OwnershipError, failure_message
from coursegen.jobs.models import JobRecord
from coursegen.jobs.queue import JobQueue
from coursegen.storage.courses_repo import CourseStore
from coursegen.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

BeginOutcome = Literal["started", "workflow_failed"]


class WorkflowStatusTracker:
  """Keep the owning course's status consistent with its jobs."""

  def __init__(self, *, courses: CourseStore, queue: JobQueue, clock: Clock = utc_now) -> None:
    self._courses = courses
    self._queue = queue
    self._clock = clock

  async def begin(self, job: JobRecord) -> BeginOutcome:
    """Set IN_PROGRESS; a FAILED workflow stays failed until re-triggered."""
    if await self._courses.mark_in_progress(job.workflow_id, now=self._clock()):
      return "started"

    course = await self._courses.get_course(job.workflow_id)
    if course is None:
      raise OwnershipError(f"Course not found for workflow {job.workflow_id}")

    logger.info("Skipping %s job %s; workflow %s is %s", job.job_type, job.job_id, job.workflow_id, course.generation_status)
    return "workflow_failed"

  async def succeeded(self, job: JobRecord) -> None:
    """Resolve to COMPLETED once no live job remains for the workflow."""
    outstanding = await self._queue.outstanding(job.workflow_id)
    if outstanding:
      logger.debug("Workflow %s still has %d live job(s)", job.workflow_id, outstanding)
      return

    course = await self._courses.get_course(job.workflow_id)
    if course is None or course.generation_status == "FAILED":
      return

    await self._courses.set_status(job.workflow_id, "COMPLETED", now=self._clock())
    logger.info("Workflow %s completed", job.workflow_id)

  async def failed(self, job: JobRecord, exc: BaseException) -> None:
    message = failure_message(exc)
    if await self._courses.get_course(job.workflow_id) is None:
      logger.warning("Job %s failed for missing workflow %s: %s", job.job_id, job.workflow_id, message)
      return
    await self._courses.set_status(job.workflow_id, "FAILED", error=message, now=self._clock())
    logger.warning("Workflow %s failed during %s job %s: %s", job.workflow_id, job.job_type, job.job_id, message)
