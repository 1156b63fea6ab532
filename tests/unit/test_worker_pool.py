from __future__ import annotations

import asyncio
from collections.abc import Callable

import anyio
import fakeredis
import pytest
from fakes import FakeClock, ScriptedGenerator, UpstreamError, run_course

from coursegen.core.runtime import PipelineRuntime
from coursegen.jobs.models import ArticleContentPayload, JobRecord, OutlinePayload


@pytest.mark.anyio
async def test_plain_error_fails_workflow_without_retry(runtime: PipelineRuntime, generator: ScriptedGenerator) -> None:
  """A generation error is terminal: one attempt, FAILED status, later jobs skipped."""
  generator.script("course_article_generation", RuntimeError("model exploded"))

  course_id = await run_course(runtime)

  course = await runtime.courses.get_course(course_id)
  assert course.generation_status == "FAILED"
  assert course.generation_error == "generation: model exploded"
  failed = await runtime.queue.list_jobs(states=["failed"], workflow_id=course_id)
  assert [(job.job_type, job.attempts_made) for job in failed] == [("article_content", 1)]
  # The sibling article job is acknowledged without calling the model.
  assert generator.count("course_article_generation") == 1
  skipped = [job for job in await runtime.queue.list_jobs(states=["completed"], workflow_id=course_id) if job.result == {"skipped": "workflow_failed"}]
  assert len(skipped) == 1
  assert await runtime.queue.outstanding(course_id) == 0


@pytest.mark.anyio
async def test_failed_workflow_recovers_when_retriggered(runtime: PipelineRuntime, generator: ScriptedGenerator) -> None:
  generator.script("course_article_generation", RuntimeError("model exploded"))
  course_id = await run_course(runtime)

  jobs = await runtime.workflows.generate_content(course_id)
  assert len(jobs) == 2
  assert (await runtime.courses.get_course(course_id)).generation_status == "PENDING"

  await runtime.workers.drain()

  course = await runtime.courses.get_course(course_id)
  assert course.generation_status == "COMPLETED"
  assert course.generation_error is None


@pytest.mark.anyio
async def test_rate_limit_then_recover_never_fails_workflow(runtime: PipelineRuntime, generator: ScriptedGenerator, clock: FakeClock) -> None:
  """Shrinking rate-limit windows delay the job; it completes and the course never fails."""
  generator.script(
    "course_article_generation",
    UpstreamError("Rate limit exceeded, retry after 30 seconds", status_code=429),
    UpstreamError("Rate limit exceeded, retry after 15 seconds", status_code=429),
    UpstreamError("Rate limit exceeded, retry after 2 seconds", status_code=429),
  )
  course_id = await run_course(runtime)

  articles = await runtime.queue.list_jobs(workflow_id=course_id, states=["delayed"])
  assert len(articles) == 2
  assert all((job.next_run_at - clock()).total_seconds() >= 30 for job in articles)

  for window in (30, 15, 5):
    clock.advance(window)
    await runtime.workers.drain()

  course = await runtime.courses.get_course(course_id)
  assert course.generation_status == "COMPLETED"
  assert "FAILED" not in [status for _, status, _ in runtime.courses.status_history]
  jobs = await runtime.queue.list_jobs(workflow_id=course_id)
  assert {job.state for job in jobs} == {"completed"}
  assert sorted(job.attempts_made for job in jobs if job.job_type == "article_content") == [3, 3]
  history = await runtime.rate_limits.history()
  assert history[0].hit_count == 3


@pytest.mark.anyio
async def test_exhausted_infrastructure_retries_record_category(make_runtime: Callable[..., PipelineRuntime], generator: ScriptedGenerator, clock: FakeClock) -> None:
  pipeline = make_runtime(queue_max_attempts=2)
  generator.script("course_outline_generation", ConnectionError("upstream reset"), ConnectionError("upstream reset"))

  course_id = await run_course(pipeline)
  assert (await pipeline.courses.get_course(course_id)).generation_status == "IN_PROGRESS"

  clock.advance(10)
  await pipeline.workers.drain()

  course = await pipeline.courses.get_course(course_id)
  assert course.generation_status == "FAILED"
  assert course.generation_error == "infrastructure: upstream reset"


@pytest.mark.anyio
async def test_ownership_mismatch_fails_only_the_claiming_workflow(runtime: PipelineRuntime) -> None:
  owner_id = await run_course(runtime, title="Owner")
  article = (await runtime.courses.list_sections(owner_id))[0].articles[0]
  other = await runtime.workflows.create_course(title="Intruder")

  await runtime.queue.enqueue("article_content", ArticleContentPayload(workflow_id=other.course_id, stage_target_id=article.article_id))
  await runtime.workers.drain()

  intruder = await runtime.courses.get_course(other.course_id)
  assert intruder.generation_status == "FAILED"
  assert intruder.generation_error.startswith("ownership: ")
  assert (await runtime.courses.get_course(owner_id)).generation_status == "COMPLETED"


@pytest.mark.anyio
async def test_job_for_missing_course_fails_without_retry(runtime: PipelineRuntime) -> None:
  job = await runtime.queue.enqueue("outline", OutlinePayload(workflow_id="missing-course"))

  await runtime.workers.drain()

  stored = await runtime.queue.get(job.job_id)
  assert stored.state == "failed"
  assert stored.attempts_made == 1


@pytest.mark.anyio
async def test_invalid_stored_payload_is_rejected(runtime: PipelineRuntime, clock: FakeClock) -> None:
  now = clock()
  record = JobRecord(
    job_id="corrupt-1",
    job_type="article_content",
    workflow_id="c1",
    payload={"job_type": "article_content", "workflow_id": "c1"},
    state="waiting",
    attempts_made=0,
    max_attempts=5,
    next_run_at=now,
    created_at=now,
    updated_at=now,
  )
  await runtime.jobs.insert(record)

  assert (await runtime.workers.run_once()).job_id == "corrupt-1"
  stored = await runtime.queue.get("corrupt-1")
  assert stored.state == "failed"
  assert stored.last_error.startswith("Invalid job payload")


@pytest.mark.anyio
async def test_pool_processes_jobs_in_background_and_stops(runtime: PipelineRuntime) -> None:
  course = await runtime.workflows.create_course(title="Background")
  runtime.workers.start()
  assert runtime.workers.running

  await runtime.workflows.start_workflow(course.course_id)
  with anyio.fail_after(5):
    while (await runtime.courses.get_course(course.course_id)).generation_status != "COMPLETED":
      await asyncio.sleep(0.01)

  await runtime.workers.stop(grace_seconds=1)
  assert not runtime.workers.running
  assert runtime.workers.in_flight == 0


def test_pool_rejects_zero_concurrency(make_runtime: Callable[..., PipelineRuntime]) -> None:
  with pytest.raises(ValueError):
    make_runtime(worker_concurrency=0)


@pytest.mark.anyio
async def test_maintenance_deactivates_lapsed_rate_limit_audit(runtime: PipelineRuntime, redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock) -> None:
  await runtime.rate_limits.set("openai", "gpt-test", 30)
  await redis_client.delete(runtime.rate_limits.key_for("openai", "gpt-test"))

  clock.advance(31)
  await runtime.workers.run_maintenance()

  [record] = await runtime.rate_limits.history()
  assert record.is_active is False


@pytest.mark.anyio
async def test_job_that_keeps_stalling_fails_its_workflow(make_runtime: Callable[..., PipelineRuntime], clock: FakeClock) -> None:
  """Every lapsed lock costs an attempt, so a job that kills its worker is not redelivered forever."""
  pipeline = make_runtime(queue_max_attempts=2)
  await pipeline.open()
  try:
    course = await pipeline.workflows.create_course(title="Crashy")
    job = await pipeline.workflows.start_workflow(course.course_id)

    for attempt in (1, 2):
      # Claim without processing, as a worker that dies mid-job would.
      assert (await pipeline.queue.next()).job_id == job.job_id
      clock.advance(pipeline.settings.queue_lock_seconds + 1)
      await pipeline.workers.run_maintenance()
      assert (await pipeline.queue.get(job.job_id)).attempts_made == attempt

    stored = await pipeline.queue.get(job.job_id)
    assert stored.state == "failed"
    assert stored.last_error == "Worker lock expired after 2 attempt(s)"
    failed = await pipeline.courses.get_course(course.course_id)
    assert failed.generation_status == "FAILED"
    assert failed.generation_error == "infrastructure: Worker lock expired after 2 attempt(s)"
    assert await pipeline.queue.next() is None
  finally:
    await pipeline.close()
