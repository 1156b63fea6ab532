from __future__ import annotations

from collections import Counter

import pytest
from fakes import ScriptedGenerator

from coursegen.core.runtime import PipelineRuntime


async def _job_types(runtime: PipelineRuntime, course_id: str, state: str) -> Counter:
  return Counter(job.job_type for job in await runtime.queue.list_jobs(states=[state], workflow_id=course_id))


@pytest.mark.anyio
async def test_outline_to_enrichment_completes_course(runtime: PipelineRuntime, generator: ScriptedGenerator) -> None:
  """Outline fans out two articles, each article queues one enrichment, then the course completes."""
  course = await runtime.workflows.create_course(title="C1", description="Two article course.")
  await runtime.workflows.start_workflow(course.course_id)

  # Outline completion enqueues one content job per planned article.
  outline = await runtime.workers.run_once()
  assert outline.job_type == "outline"
  assert await _job_types(runtime, course.course_id, "waiting") == Counter({"article_content": 2})
  assert (await runtime.courses.get_course(course.course_id)).generation_status == "IN_PROGRESS"

  # Each content job enqueues exactly one enrichment job.
  assert (await runtime.workers.run_once()).job_type == "article_content"
  assert (await runtime.workers.run_once()).job_type == "article_content"
  assert await _job_types(runtime, course.course_id, "waiting") == Counter({"enrichment": 2})
  assert (await runtime.courses.get_course(course.course_id)).generation_status == "IN_PROGRESS"

  assert await runtime.workers.drain() == 2

  completed = await _job_types(runtime, course.course_id, "completed")
  assert completed == Counter({"outline": 1, "article_content": 2, "enrichment": 2})
  final = await runtime.courses.get_course(course.course_id)
  assert final.generation_status == "COMPLETED"
  assert final.generation_error is None
  assert [call[0] for call in generator.calls] == [
    "course_outline_generation",
    "course_article_generation",
    "course_article_generation",
    "article_enrichment",
    "article_enrichment",
  ]


@pytest.mark.anyio
async def test_article_prompts_carry_outline_context(runtime: PipelineRuntime, generator: ScriptedGenerator) -> None:
  course = await runtime.workflows.create_course(title="Python Basics", description="Learn the core language.", level="advanced")
  await runtime.workflows.start_workflow(course.course_id, context={"tone": "friendly"})
  await runtime.workers.drain()

  article_prompts = [prompt for interaction, prompt, _ in generator.calls if interaction == "course_article_generation"]
  assert "Write the article 'Installing Python' for the course 'Python Basics'." in article_prompts[0]
  assert "Audience level: advanced" in article_prompts[0]
  assert "Section: Getting Started (Install and run Python.)" in article_prompts[1]
