from __future__ import annotations

import pytest
from fakes import run_course

from coursegen.core.runtime import PipelineRuntime
from coursegen.services.workflows import WorkflowNotFoundError, WorkflowStateError


@pytest.mark.anyio
async def test_start_workflow_is_deduplicated_while_queued(runtime: PipelineRuntime) -> None:
  course = await runtime.workflows.create_course(title="Data Science 101", level="intermediate")
  assert course.slug == "data-science-101"
  assert course.generation_status == "PENDING"

  first = await runtime.workflows.start_workflow(course.course_id, context={"audience": "analysts"})
  second = await runtime.workflows.start_workflow(course.course_id)

  assert second.job_id == first.job_id
  assert first.payload["context"] == {"audience": "analysts"}


@pytest.mark.anyio
async def test_regenerate_outline_is_not_deduplicated(runtime: PipelineRuntime) -> None:
  course = await runtime.workflows.create_course(title="Statistics")
  queued = await runtime.workflows.start_workflow(course.course_id)

  forced = await runtime.workflows.start_workflow(course.course_id, regenerate=True)

  assert forced.job_id != queued.job_id
  assert forced.idempotency_key is None


@pytest.mark.anyio
async def test_unknown_course_raises_not_found(runtime: PipelineRuntime) -> None:
  with pytest.raises(WorkflowNotFoundError):
    await runtime.workflows.start_workflow("missing")
  with pytest.raises(WorkflowNotFoundError):
    await runtime.workflows.status("missing")


@pytest.mark.anyio
async def test_content_and_quizzes_require_an_outline(runtime: PipelineRuntime) -> None:
  course = await runtime.workflows.create_course(title="No Outline Yet")

  with pytest.raises(WorkflowStateError):
    await runtime.workflows.generate_content(course.course_id)
  with pytest.raises(WorkflowStateError):
    await runtime.workflows.generate_quizzes(course.course_id)
  with pytest.raises(WorkflowStateError):
    await runtime.workflows.generate_final_exam_bank(course.course_id)


@pytest.mark.anyio
async def test_generate_content_skips_generated_articles_unless_regenerating(runtime: PipelineRuntime) -> None:
  course_id = await run_course(runtime)
  section = (await runtime.courses.list_sections(course_id))[0]

  assert await runtime.workflows.generate_content(course_id) == []
  jobs = await runtime.workflows.generate_content(course_id, section_id=section.section_id, regenerate=True)
  assert len(jobs) == 2
  assert all(job.payload["regenerate"] for job in jobs)
  assert jobs[0].payload["context"]["section_title"] == section.title

  with pytest.raises(WorkflowNotFoundError):
    await runtime.workflows.generate_content(course_id, section_id="other-section")


@pytest.mark.anyio
async def test_regenerate_validates_targets(runtime: PipelineRuntime) -> None:
  course_id = await run_course(runtime)
  other_id = await run_course(runtime, title="Other Course")
  foreign_article = (await runtime.courses.list_sections(other_id))[0].articles[0]

  with pytest.raises(WorkflowStateError):
    await runtime.workflows.regenerate(course_id, "article_content")
  with pytest.raises(WorkflowNotFoundError):
    await runtime.workflows.regenerate(course_id, "article_content", foreign_article.article_id)
  with pytest.raises(WorkflowNotFoundError):
    await runtime.workflows.regenerate(course_id, "quiz_section", "missing-section")

  job = await runtime.workflows.regenerate(course_id, "quiz_final_exam")
  assert job.payload["regenerate"] is True
  assert (await runtime.courses.get_course(course_id)).generation_status == "PENDING"


@pytest.mark.anyio
async def test_status_summarizes_progress(runtime: PipelineRuntime) -> None:
  course_id = await run_course(runtime)

  status = await runtime.workflows.status(course_id)

  assert status.status == "COMPLETED"
  assert status.sections == 1
  assert (status.articles_total, status.articles_generated, status.articles_enriched) == (2, 2, 2)
  assert status.completed_at is not None
  assert status.jobs["completed"] == 5
