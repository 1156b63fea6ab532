"""Entry points that start, extend and inspect course generation workflows."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Final

from coursegen.jobs.models import (
  ArticleContentPayload,
  ArticleQuizPayload,
  EnrichmentPayload,
  FinalExamBankPayload,
  FinalExamPayload,
  JobRecord,
  JobType,
  OutlinePayload,
  SectionQuizPayload,
)
from coursegen.jobs.queue import JobQueue
from coursegen.pipeline.base import article_context
from coursegen.storage.courses_repo import CourseRecord, CourseStore, GenerationStatus, SectionRecord
from coursegen.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

TARGETED_STAGES: Final[frozenset[str]] = frozenset({"article_content", "enrichment", "quiz_article", "quiz_section"})


class WorkflowNotFoundError(LookupError):
  """The course, section or article does not exist for the workflow."""


class WorkflowStateError(ValueError):
  """The workflow is not in a state that allows the requested action."""


@dataclass(frozen=True)
class WorkflowStatus:
  course_id: str
  status: GenerationStatus
  error: str | None
  started_at: datetime | None
  completed_at: datetime | None
  sections: int
  articles_total: int
  articles_generated: int
  articles_enriched: int
  final_exam_questions: int
  jobs: dict[str, int] = field(default_factory=dict)


class WorkflowService:
  """Translate workflow requests into queued stage jobs."""

  def __init__(self, *, courses: CourseStore, queue: JobQueue, clock: Clock = utc_now) -> None:
    self._courses = courses
    self._queue = queue
    self._clock = clock

  async def create_course(self, *, title: str, description: str = "", level: str = "beginner") -> CourseRecord:
    course = await self._courses.create_course(title=title, description=description, level=level)
    logger.info("Created course %s (%s)", course.course_id, course.slug)
    return course

  async def start_workflow(self, course_id: str, *, regenerate: bool = False, context: Mapping[str, Any] | None = None) -> JobRecord:
    """Queue the outline job that kicks off the whole fan-out."""
    course = await self._require_course(course_id)
    await self._reopen(course)
    payload = OutlinePayload(workflow_id=course_id, regenerate=regenerate, context=dict(context or {}))
    return await self._queue.enqueue("outline", payload, idempotency_key=None if regenerate else f"outline:{course_id}")

  async def generate_content(self, course_id: str, *, section_id: str | None = None, regenerate: bool = False) -> list[JobRecord]:
    """Queue article generation for every pending article, optionally within one section."""
    course = await self._require_course(course_id)
    sections = await self._require_outline(course_id)
    if section_id is not None:
      sections = [section for section in sections if section.section_id == section_id]
      if not sections:
        raise WorkflowNotFoundError(f"Section {section_id} not found in course {course_id}")

    await self._reopen(course)
    jobs: list[JobRecord] = []
    for section in sections:
      for article in section.articles:
        if article.is_generated and not regenerate:
          continue
        payload = ArticleContentPayload(workflow_id=course_id, stage_target_id=article.article_id, regenerate=regenerate, context=article_context(course, section, article))
        jobs.append(await self._queue.enqueue("article_content", payload, idempotency_key=self._key("article_content", article.article_id, regenerate)))
    logger.info("Queued %d article job(s) for course %s", len(jobs), course_id)
    return jobs

  async def generate_quizzes(self, course_id: str, *, regenerate: bool = False, include_final_exam: bool = True) -> list[JobRecord]:
    """Queue article and section quizzes for generated content, plus the final exam."""
    course = await self._require_course(course_id)
    sections = await self._require_outline(course_id)
    await self._reopen(course)

    jobs: list[JobRecord] = []
    for section in sections:
      generated = [article for article in section.articles if article.content]
      for article in generated:
        payload = ArticleQuizPayload(workflow_id=course_id, stage_target_id=article.article_id, regenerate=regenerate)
        jobs.append(await self._queue.enqueue("quiz_article", payload, idempotency_key=self._key("quiz_article", article.article_id, regenerate)))
      if generated:
        section_payload = SectionQuizPayload(workflow_id=course_id, stage_target_id=section.section_id, regenerate=regenerate)
        jobs.append(await self._queue.enqueue("quiz_section", section_payload, idempotency_key=self._key("quiz_section", section.section_id, regenerate)))

    if include_final_exam and jobs:
      exam = FinalExamPayload(workflow_id=course_id, regenerate=regenerate)
      jobs.append(await self._queue.enqueue("quiz_final_exam", exam, idempotency_key=self._key("quiz_final_exam", course_id, regenerate)))

    if not jobs:
      raise WorkflowStateError(f"Course {course_id} has no generated articles to build quizzes from")
    logger.info("Queued %d quiz job(s) for course %s", len(jobs), course_id)
    return jobs

  async def generate_final_exam_bank(self, course_id: str, *, regenerate: bool = False) -> JobRecord:
    course = await self._require_course(course_id)
    await self._require_outline(course_id)
    await self._reopen(course)
    payload = FinalExamBankPayload(workflow_id=course_id, regenerate=regenerate)
    return await self._queue.enqueue("quiz_final_bank", payload, idempotency_key=self._key("quiz_final_bank", course_id, regenerate))

  async def regenerate(self, course_id: str, stage: JobType, target_id: str | None = None) -> JobRecord:
    """Re-run one stage for one target, replacing what it produced before."""
    course = await self._require_course(course_id)
    if stage in TARGETED_STAGES and not target_id:
      raise WorkflowStateError(f"Stage {stage} requires a target id")

    if stage in {"article_content", "enrichment", "quiz_article"}:
      article = await self._courses.get_article(target_id or "")
      if article is None or article.course_id != course_id:
        raise WorkflowNotFoundError(f"Article {target_id} not found in course {course_id}")
    elif stage == "quiz_section":
      section = await self._courses.get_section(target_id or "")
      if section is None or section.course_id != course_id:
        raise WorkflowNotFoundError(f"Section {target_id} not found in course {course_id}")

    await self._reopen(course)
    payloads = {
      "outline": lambda: OutlinePayload(workflow_id=course_id, regenerate=True),
      "article_content": lambda: ArticleContentPayload(workflow_id=course_id, stage_target_id=target_id, regenerate=True),
      "enrichment": lambda: EnrichmentPayload(workflow_id=course_id, stage_target_id=target_id, regenerate=True),
      "quiz_article": lambda: ArticleQuizPayload(workflow_id=course_id, stage_target_id=target_id, regenerate=True),
      "quiz_section": lambda: SectionQuizPayload(workflow_id=course_id, stage_target_id=target_id, regenerate=True),
      "quiz_final_exam": lambda: FinalExamPayload(workflow_id=course_id, regenerate=True),
      "quiz_final_bank": lambda: FinalExamBankPayload(workflow_id=course_id, regenerate=True),
    }
    build = payloads.get(stage)
    if build is None:
      raise WorkflowStateError(f"Unknown stage: {stage}")
    logger.info("Regenerating %s for course %s target=%s", stage, course_id, target_id or "-")
    return await self._queue.enqueue(stage, build())

  async def retry_job(self, job_id: str) -> JobRecord:
    """Revive a failed job, reopening its workflow so the worker does not skip it."""
    job = await self._queue.get(job_id)
    if job is None:
      raise WorkflowNotFoundError(f"Job not found: {job_id}")
    if job.state != "failed":
      raise WorkflowStateError(f"Only failed jobs can be retried (job {job_id} is {job.state})")

    course = await self._courses.get_course(job.workflow_id)
    if course is not None:
      await self._reopen(course)
    return await self._queue.retry(job_id)

  async def status(self, course_id: str) -> WorkflowStatus:
    course = await self._require_course(course_id)
    sections = await self._courses.list_sections(course_id)
    articles = [article for section in sections for article in section.articles]
    return WorkflowStatus(
      course_id=course_id,
      status=course.generation_status,
      error=course.generation_error,
      started_at=course.generation_started_at,
      completed_at=course.generation_completed_at,
      sections=len(sections),
      articles_total=len(articles),
      articles_generated=sum(1 for article in articles if article.is_generated),
      articles_enriched=sum(1 for article in articles if article.enriched_at is not None),
      final_exam_questions=await self._courses.count_final_exam_questions(course_id),
      jobs=await self._queue.counts(course_id),
    )

  async def _require_course(self, course_id: str) -> CourseRecord:
    course = await self._courses.get_course(course_id)
    if course is None:
      raise WorkflowNotFoundError(f"Course not found: {course_id}")
    return course

  async def _require_outline(self, course_id: str) -> list[SectionRecord]:
    sections = await self._courses.list_sections(course_id)
    if not sections:
      raise WorkflowStateError(f"Course {course_id} has no outline yet")
    return sections

  async def _reopen(self, course: CourseRecord) -> None:
    """FAILED and COMPLETED workflows go back to PENDING when new work is queued."""
    if course.generation_status in {"FAILED", "COMPLETED"}:
      await self._courses.set_status(course.course_id, "PENDING", now=self._clock())
      logger.info("Reopened workflow %s (was %s)", course.course_id, course.generation_status)

  @staticmethod
  def _key(stage: str, target_id: str, regenerate: bool) -> str | None:
    return None if regenerate else f"{stage}:{target_id}"
