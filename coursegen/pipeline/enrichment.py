"""Enrichment stage: weave suggested learning resources into article markdown."""

from __future__ import annotations

import logging
import re
from typing import Any

from coursegen.ai.json_parser import parse_model_output
from coursegen.ai.prompts import render_enrichment_prompt
from coursegen.jobs.models import EnrichmentPayload, JobRecord
from coursegen.pipeline.base import StageDeps, require_article, require_course
from coursegen.pipeline.contracts import EnrichmentPlan, EnrichmentResource

logger = logging.getLogger(__name__)

BLOCK_START = "<!-- enrichment:start -->"
BLOCK_END = "<!-- enrichment:end -->"
SUPPLEMENT_HEADING = "## Additional Resources"

_BLOCK_RE = re.compile(rf"\n*{re.escape(BLOCK_START)}.*?{re.escape(BLOCK_END)}\n*", re.DOTALL)


def strip_enrichment(content: str) -> str:
  """Remove previously inserted resource blocks so enrichment can be re-applied."""
  return _BLOCK_RE.sub("\n\n", content).strip() + "\n"


def _render_resource(resource: EnrichmentResource) -> str:
  lines = [f"> **{resource.title}**"]
  if resource.description:
    lines.append(f"> {resource.description}")
  if resource.url:
    lines.append(f"> [{resource.url}]({resource.url})")
  elif resource.search_query:
    lines.append(f'> Search for: "{resource.search_query}"')
  return "\n".join(lines)


def _block(body: str) -> list[str]:
  return ["", BLOCK_START, body, BLOCK_END, ""]


def insert_resources(content: str, resources: list[EnrichmentResource]) -> str:
  """Insert resources by placement relative to the article's `## ` headings.

  introduction lands before the first heading, middle before the middle heading,
  conclusion before the last heading, and supplement under a trailing resources heading.
  Placements that need headings the article lacks fall back to the end.
  """
  lines = strip_enrichment(content).rstrip("\n").split("\n")
  headings = [index for index, line in enumerate(lines) if line.startswith("## ")]
  end = len(lines)
  anchors = {
    "introduction": headings[0] if headings else end,
    "middle": headings[len(headings) // 2] if len(headings) >= 2 else end,
    "conclusion": headings[-1] if len(headings) >= 2 else end,
  }

  grouped: dict[int, list[str]] = {}
  supplements: list[str] = []
  for resource in resources:
    rendered = _render_resource(resource)
    if resource.placement == "supplement":
      supplements.append(rendered)
    else:
      grouped.setdefault(anchors[resource.placement], []).append(rendered)

  # Insert from the bottom up so earlier anchors keep their positions.
  for anchor in sorted(grouped, reverse=True):
    lines[anchor:anchor] = _block("\n\n".join(grouped[anchor]))

  if supplements:
    lines.extend(_block(f"{SUPPLEMENT_HEADING}\n\n" + "\n\n".join(supplements)))

  return "\n".join(lines).strip() + "\n"


class EnrichmentStage:
  job_type = "enrichment"

  def __init__(self, deps: StageDeps) -> None:
    self._deps = deps

  async def process(self, job: JobRecord, payload: EnrichmentPayload) -> dict[str, Any]:
    courses = self._deps.courses
    article = await require_article(courses, payload.stage_target_id, payload.workflow_id)
    if not article.content:
      logger.info("Article %s has no content yet; nothing to enrich", article.article_id)
      return {"article_id": article.article_id, "skipped": "no_content"}
    if article.enriched_at is not None and not payload.regenerate:
      return {"article_id": article.article_id, "skipped": "already_enriched"}

    course = await require_course(courses, payload.workflow_id)
    prompt = render_enrichment_prompt(article_title=article.title, course_title=course.title, content=strip_enrichment(article.content))
    raw = await self._deps.gateway.generate("article_enrichment", prompt, {"article_id": article.article_id, "job_id": job.job_id})
    plan = parse_model_output(raw, EnrichmentPlan, label="article enrichment")

    if not plan.should_enrich or not plan.resources:
      # Stamp anyway so re-delivery does not ask the model again.
      await courses.save_article_enrichment(article.article_id, content=article.content, enriched_at=self._deps.clock())
      return {"article_id": article.article_id, "enriched": False, "explanation": plan.explanation[:200]}

    enriched = insert_resources(article.content, plan.resources)
    await courses.save_article_enrichment(article.article_id, content=enriched, enriched_at=self._deps.clock())
    logger.info("Enriched article %s with %d resource(s)", article.article_id, len(plan.resources))
    return {"article_id": article.article_id, "enriched": True, "resources": len(plan.resources)}
