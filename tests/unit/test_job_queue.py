from __future__ import annotations

import fakeredis
import pytest
from fakes import FakeClock

from coursegen.ai.backoff import BackoffScheduler
from coursegen.ai.errors import RateLimitCondition
from coursegen.jobs.models import ArticleContentPayload, InvalidJobPayloadError, OutlinePayload
from coursegen.jobs.queue import JobQueue, QueueOptions, RetentionPolicy
from coursegen.ratelimit.audit_repo import InMemoryRateLimitAuditRepository
from coursegen.ratelimit.store import RateLimitStore
from coursegen.storage.jobs_repo import InMemoryJobStore


@pytest.fixture
def rate_limits(redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock) -> RateLimitStore:
  return RateLimitStore(redis=redis_client, audit=InMemoryRateLimitAuditRepository(), clock=clock)


@pytest.fixture
def queue(rate_limits: RateLimitStore, clock: FakeClock) -> JobQueue:
  options = QueueOptions(max_attempts=3, default_delay_ms=0, lock_seconds=60)
  return JobQueue(store=InMemoryJobStore(), scheduler=BackoffScheduler(rate_limits=rate_limits), options=options, clock=clock)


def _article(workflow_id: str, article_id: str) -> ArticleContentPayload:
  return ArticleContentPayload(workflow_id=workflow_id, stage_target_id=article_id)


@pytest.mark.anyio
async def test_ready_jobs_are_claimed_in_fifo_order(queue: JobQueue) -> None:
  first = await queue.enqueue("article_content", _article("c1", "a1"))
  second = await queue.enqueue("article_content", _article("c1", "a2"))
  third = await queue.enqueue("article_content", _article("c1", "a3"))

  claimed = [await queue.next(), await queue.next(), await queue.next()]

  assert [job.job_id for job in claimed] == [first.job_id, second.job_id, third.job_id]
  assert all(job.state == "active" for job in claimed)
  assert await queue.next() is None


@pytest.mark.anyio
async def test_delayed_job_becomes_ready_after_its_delay(queue: JobQueue, clock: FakeClock) -> None:
  job = await queue.enqueue("outline", OutlinePayload(workflow_id="c1"), delay_ms=5_000)
  assert job.state == "delayed"
  assert await queue.next() is None

  clock.advance(5)
  claimed = await queue.next()
  assert claimed is not None and claimed.job_id == job.job_id


@pytest.mark.anyio
async def test_next_filters_by_job_type(queue: JobQueue) -> None:
  await queue.enqueue("outline", OutlinePayload(workflow_id="c1"))
  article = await queue.enqueue("article_content", _article("c1", "a1"))

  claimed = await queue.next(["article_content"])
  assert claimed is not None and claimed.job_id == article.job_id


@pytest.mark.anyio
async def test_idempotency_key_dedupes_live_jobs_only(queue: JobQueue) -> None:
  first = await queue.enqueue("outline", OutlinePayload(workflow_id="c1"), idempotency_key="outline:c1")
  duplicate = await queue.enqueue("outline", OutlinePayload(workflow_id="c1"), idempotency_key="outline:c1")
  assert duplicate.job_id == first.job_id
  assert (await queue.counts("c1"))["waiting"] == 1

  claimed = await queue.next()
  await queue.ack(claimed, {"ok": True})

  # Once the first job is terminal the key is free again.
  fresh = await queue.enqueue("outline", OutlinePayload(workflow_id="c1"), idempotency_key="outline:c1")
  assert fresh.job_id != first.job_id


@pytest.mark.anyio
async def test_payload_is_validated_against_job_type(queue: JobQueue) -> None:
  with pytest.raises(InvalidJobPayloadError):
    await queue.enqueue("article_content", {"workflow_id": "c1"})

  with pytest.raises(InvalidJobPayloadError):
    await queue.enqueue("outline", {"workflow_id": "c1", "context": {"notes": "x" * 5000}})

  with pytest.raises(InvalidJobPayloadError):
    await queue.enqueue("outline", {"workflow_id": "c1", "content": "full article body"})

  with pytest.raises(ValueError):
    await queue.enqueue("outline", _article("c1", "a1"))

  assert await queue.list_jobs() == []


@pytest.mark.anyio
async def test_mapping_payload_is_normalized(queue: JobQueue) -> None:
  job = await queue.enqueue("enrichment", {"workflow_id": "c1", "stage_target_id": "a1", "context": {"article_title": "Intro"}})

  assert job.payload == {"workflow_id": "c1", "regenerate": False, "context": {"article_title": "Intro"}, "stage_target_id": "a1", "job_type": "enrichment"}
  assert job.typed_payload().stage_target_id == "a1"


@pytest.mark.anyio
async def test_retryable_failure_is_delayed_until_budget_runs_out(queue: JobQueue, clock: FakeClock) -> None:
  await queue.enqueue("outline", OutlinePayload(workflow_id="c1"))

  job = await queue.next()
  job = await queue.fail(job, ConnectionError("reset"))
  assert job.state == "delayed"
  assert job.attempts_made == 1
  assert (job.next_run_at - clock()).total_seconds() == 10

  clock.advance(10)
  job = await queue.fail(await queue.next(), ConnectionError("reset"))
  assert job.state == "delayed"

  clock.advance(20)
  job = await queue.fail(await queue.next(), ConnectionError("reset"))
  assert job.state == "failed"
  assert job.attempts_made == 3
  assert job.last_error == "reset"
  assert job.finished_at == clock()


@pytest.mark.anyio
async def test_rate_limited_failure_waits_for_the_window(queue: JobQueue, rate_limits: RateLimitStore, clock: FakeClock) -> None:
  await queue.enqueue("article_content", _article("c1", "a1"))
  await rate_limits.set("openai", "gpt-test", 40)

  job = await queue.fail(await queue.next(), RateLimitCondition("openai", "gpt-test", retry_after=40))

  assert job.state == "delayed"
  assert (job.next_run_at - clock()).total_seconds() >= 40


@pytest.mark.anyio
async def test_non_retryable_failure_is_terminal_and_can_be_retried_manually(queue: JobQueue) -> None:
  await queue.enqueue("outline", OutlinePayload(workflow_id="c1"))
  failed = await queue.fail(await queue.next(), ValueError("bad"), retryable=False)
  assert failed.state == "failed"
  assert failed.attempts_made == 1

  retried = await queue.retry(failed.job_id)
  assert retried.state == "waiting"
  assert retried.attempts_made == 0

  with pytest.raises(ValueError):
    await queue.retry(failed.job_id)
  with pytest.raises(LookupError):
    await queue.retry("missing")


@pytest.mark.anyio
async def test_stalled_active_job_is_requeued(queue: JobQueue, clock: FakeClock) -> None:
  """A worker that dies mid-job leaves a lock that lapses; the job is delivered again."""
  job = await queue.enqueue("outline", OutlinePayload(workflow_id="c1"))
  assert (await queue.next()).job_id == job.job_id

  clock.advance(30)
  assert await queue.requeue_stalled() == []

  clock.advance(31)
  [released] = await queue.requeue_stalled()
  assert (released.job_id, released.state, released.attempts_made) == (job.job_id, "waiting", 1)
  redelivered = await queue.next()
  assert redelivered is not None and redelivered.job_id == job.job_id


@pytest.mark.anyio
async def test_stalling_spends_the_attempt_budget(queue: JobQueue, clock: FakeClock) -> None:
  job = await queue.enqueue("outline", OutlinePayload(workflow_id="c1"))

  for _ in range(3):
    assert (await queue.next()).job_id == job.job_id
    clock.advance(61)
    [released] = await queue.requeue_stalled()

  assert (released.state, released.attempts_made) == ("failed", 3)
  assert released.finished_at == clock()
  assert released.last_error == "Worker lock expired after 3 attempt(s)"
  assert await queue.next() is None
  assert (await queue.counts())["failed"] == 1


@pytest.mark.anyio
async def test_outstanding_counts_live_jobs_per_workflow(queue: JobQueue) -> None:
  await queue.enqueue("outline", OutlinePayload(workflow_id="c1"))
  await queue.enqueue("article_content", _article("c1", "a1"), delay_ms=60_000)
  await queue.enqueue("outline", OutlinePayload(workflow_id="c2"))
  await queue.ack(await queue.next(), None)

  assert await queue.outstanding("c1") == 1
  assert await queue.outstanding("c2") == 1


@pytest.mark.anyio
async def test_retention_purges_by_count_and_age(rate_limits: RateLimitStore, clock: FakeClock) -> None:
  options = QueueOptions(default_delay_ms=0, completed_retention=RetentionPolicy(age_seconds=3600, count=2), failed_retention=RetentionPolicy(age_seconds=60, count=10))
  queue = JobQueue(store=InMemoryJobStore(), scheduler=BackoffScheduler(rate_limits=rate_limits), options=options, clock=clock)

  for index in range(4):
    await queue.enqueue("article_content", _article("c1", f"a{index}"))
    await queue.ack(await queue.next(), None)
  await queue.enqueue("outline", OutlinePayload(workflow_id="c1"))
  await queue.fail(await queue.next(), ValueError("bad"), retryable=False)

  assert await queue.purge_expired() == 2
  assert (await queue.counts())["completed"] == 2
  assert (await queue.counts())["failed"] == 1

  clock.advance(61)
  assert await queue.purge_expired() == 1
  assert (await queue.counts())["failed"] == 0


@pytest.mark.anyio
async def test_remove_and_clear(queue: JobQueue) -> None:
  job = await queue.enqueue("outline", OutlinePayload(workflow_id="c1"))
  await queue.enqueue("outline", OutlinePayload(workflow_id="c2"))

  assert await queue.remove(job.job_id) is True
  assert await queue.remove(job.job_id) is False
  assert await queue.clear("waiting") == 1
  assert await queue.list_jobs() == []
