"""Article content stage: write one article's markdown, then queue its enrichment."""

from __future__ import annotations

import logging
from typing import Any

from coursegen.ai.errors import MalformedOutputError
from coursegen.ai.json_parser import strip_wrapper
from coursegen.ai.prompts import render_article_prompt
from coursegen.jobs.models import ArticleContentPayload, EnrichmentPayload, JobRecord
from coursegen.pipeline.base import StageDeps, article_context, require_article, require_course

logger = logging.getLogger(__name__)


class ArticleContentStage:
  job_type = "article_content"

  def __init__(self, deps: StageDeps) -> None:
    self._deps = deps

  async def process(self, job: JobRecord, payload: ArticleContentPayload) -> dict[str, Any]:
    courses = self._deps.courses
    article = await require_article(courses, payload.stage_target_id, payload.workflow_id)
    result: dict[str, Any] = {"article_id": article.article_id}

    if article.is_generated and article.content and not payload.regenerate:
      logger.info("Article %s already generated; skipping content generation", article.article_id)
      result["skipped"] = "already_generated"
      if article.enriched_at is not None:
        return result
    else:
      course = await require_course(courses, payload.workflow_id)
      section = await courses.get_section(article.section_id)
      context = {**payload.context, **article_context(course, section, article)}
      raw = await self._deps.gateway.generate("course_article_generation", render_article_prompt(context), {"article_id": article.article_id, "job_id": job.job_id})
      content = strip_wrapper(raw)
      if not content.strip():
        raise MalformedOutputError(f"Empty content generated for article {article.article_id}", raw_excerpt=raw[:200])
      await courses.save_article_content(article.article_id, content=content, generated_at=self._deps.clock())
      logger.info("Stored %d chars for article %s", len(content), article.article_id)
      result["chars"] = len(content)

    follow_up = EnrichmentPayload(workflow_id=payload.workflow_id, stage_target_id=article.article_id, regenerate=payload.regenerate, context={"article_title": article.title})
    enrichment = await self._deps.queue.enqueue("enrichment", follow_up, idempotency_key=f"enrichment:{article.article_id}")
    result["enrichment_job_id"] = enrichment.job_id
    return result
