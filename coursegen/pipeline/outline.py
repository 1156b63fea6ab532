"""Outline stage: plan sections/articles and fan out article generation."""

from __future__ import annotations

import logging
from typing import Any

from coursegen.ai.json_parser import parse_model_output
from coursegen.ai.prompts import render_outline_prompt
from coursegen.jobs.models import ArticleContentPayload, JobRecord, OutlinePayload
from coursegen.pipeline.base import StageDeps, article_context, require_course
from coursegen.pipeline.contracts import CourseOutline

logger = logging.getLogger(__name__)


class OutlineStage:
  job_type = "outline"

  def __init__(self, deps: StageDeps) -> None:
    self._deps = deps

  async def process(self, job: JobRecord, payload: OutlinePayload) -> dict[str, Any]:
    courses = self._deps.courses
    course = await require_course(courses, payload.workflow_id)
    sections = await courses.list_sections(course.course_id)

    if sections and not payload.regenerate:
      # Re-delivery after a crash: keep the persisted structure, only resume the fan-out.
      logger.info("Course %s already has %d section(s); reusing outline", course.course_id, len(sections))
    else:
      context = {**payload.context, "course_title": course.title, "course_description": course.description, "course_level": course.level}
      raw = await self._deps.gateway.generate("course_outline_generation", render_outline_prompt(context), {"course_id": course.course_id, "job_id": job.job_id})
      outline = parse_model_output(raw, CourseOutline, label="course outline")
      await courses.update_course_details(course.course_id, title=None, description=outline.description if not course.description else None)
      await courses.save_outline(course.course_id, outline, replace_existing=payload.regenerate)
      course = await require_course(courses, course.course_id)
      sections = await courses.list_sections(course.course_id)
      logger.info("Saved outline for course %s: %d section(s), %d article(s)", course.course_id, len(sections), outline.article_count)

    enqueued = 0
    total = 0
    for section in sections:
      for article in section.articles:
        total += 1
        if article.is_generated and not payload.regenerate:
          continue
        child = ArticleContentPayload(workflow_id=course.course_id, stage_target_id=article.article_id, regenerate=payload.regenerate, context=article_context(course, section, article))
        await self._deps.queue.enqueue("article_content", child, idempotency_key=f"article_content:{article.article_id}")
        enqueued += 1

    return {"sections": len(sections), "articles": total, "enqueued": enqueued}
