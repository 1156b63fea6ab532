"""Process-wide service container with an explicit open/close lifecycle."""

from __future__ import annotations

import logging
import random

from redis.asyncio import Redis

from coursegen.ai.backoff import BackoffPolicy, BackoffScheduler
from coursegen.ai.gateway import GenerationGateway
from coursegen.ai.providers.base import TextGenerator
from coursegen.ai.providers.openai import OpenAIChatGenerator
from coursegen.config import DatabaseSettings, Settings
from coursegen.core.database import Database
from coursegen.core.redis import build_redis_client
from coursegen.jobs.dispatch import StageRegistry
from coursegen.jobs.queue import JobQueue, QueueOptions, RetentionPolicy
from coursegen.jobs.worker import WorkerPool
from coursegen.pipeline.article_content import ArticleContentStage
from coursegen.pipeline.base import QuizSettings, StageDeps
from coursegen.pipeline.enrichment import EnrichmentStage
from coursegen.pipeline.outline import OutlineStage
from coursegen.pipeline.quizzes import ArticleQuizStage, FinalExamBankStage, FinalExamStage, SectionQuizStage
from coursegen.pipeline.status import WorkflowStatusTracker
from coursegen.ratelimit.audit_repo import InMemoryRateLimitAuditRepository, RateLimitAuditRepository
from coursegen.ratelimit.postgres_audit_repo import PostgresRateLimitAuditRepository
from coursegen.ratelimit.store import RateLimitStore
from coursegen.services.workflows import WorkflowService
from coursegen.storage.courses_repo import CourseStore, InMemoryCourseStore
from coursegen.storage.jobs_repo import InMemoryJobStore, JobStore
from coursegen.storage.postgres_courses_repo import PostgresCourseStore
from coursegen.storage.postgres_jobs_repo import PostgresJobStore
from coursegen.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


def build_registry(deps: StageDeps) -> StageRegistry:
  return StageRegistry.from_handlers(
    OutlineStage(deps),
    ArticleContentStage(deps),
    EnrichmentStage(deps),
    ArticleQuizStage(deps),
    SectionQuizStage(deps),
    FinalExamStage(deps),
    FinalExamBankStage(deps),
  )


def quiz_settings(settings: Settings) -> QuizSettings:
  return QuizSettings(
    article_questions=settings.quiz_article_questions,
    section_questions=settings.quiz_section_questions,
    final_exam_questions=settings.quiz_final_exam_questions,
    final_bank_questions=settings.quiz_final_bank_questions,
    final_bank_essays=settings.quiz_final_bank_essays,
    pass_mark=settings.quiz_pass_mark,
    final_exam_cooldown_hours=settings.quiz_final_exam_cooldown_hours,
  )


def queue_options(settings: Settings) -> QueueOptions:
  return QueueOptions(
    max_attempts=settings.queue_max_attempts,
    default_delay_ms=settings.queue_enqueue_delay_ms,
    lock_seconds=settings.queue_lock_seconds,
    completed_retention=RetentionPolicy(age_seconds=settings.queue_completed_retention_seconds, count=settings.queue_completed_retention_count),
    failed_retention=RetentionPolicy(age_seconds=settings.queue_failed_retention_seconds, count=settings.queue_failed_retention_count),
  )


class PipelineRuntime:
  """Own every long-lived collaborator of the pipeline.

  The runtime is built once per process (API or worker) and handed to whatever needs
  it; nothing in the package keeps module-level connections.
  """

  def __init__(
    self,
    *,
    settings: Settings,
    redis: Redis,
    generator: TextGenerator,
    job_store: JobStore,
    course_store: CourseStore,
    audit: RateLimitAuditRepository,
    database: Database | None = None,
    clock: Clock = utc_now,
    rng: random.Random | None = None,
  ) -> None:
    self.settings = settings
    self.redis = redis
    self.generator = generator
    self.database = database
    self.jobs = job_store
    self.courses = course_store
    self.rate_limits = RateLimitStore(redis=redis, audit=audit, key_prefix=settings.rate_limit_prefix, default_timeout_seconds=settings.rate_limit_default_seconds, clock=clock)
    policy = BackoffPolicy(base_delay_ms=settings.backoff_base_ms, max_delay_ms=settings.backoff_max_ms, rate_limit_floor_ms=settings.backoff_rate_limit_floor_ms)
    self.scheduler = BackoffScheduler(rate_limits=self.rate_limits, policy=policy)
    self.queue = JobQueue(store=job_store, scheduler=self.scheduler, options=queue_options(settings), clock=clock)
    self.gateway = GenerationGateway(generator=generator, rate_limits=self.rate_limits, timeout_seconds=settings.generation_timeout_seconds)
    deps = StageDeps(courses=course_store, queue=self.queue, gateway=self.gateway, quiz=quiz_settings(settings), clock=clock, rng=rng or random.Random())
    self.registry = build_registry(deps)
    self.tracker = WorkflowStatusTracker(courses=course_store, queue=self.queue, clock=clock)
    self.workers = WorkerPool(
      queue=self.queue,
      registry=self.registry,
      tracker=self.tracker,
      rate_limits=self.rate_limits,
      concurrency=settings.worker_concurrency,
      poll_seconds=settings.worker_poll_seconds,
      maintenance_seconds=settings.worker_maintenance_seconds,
    )
    self.workflows = WorkflowService(courses=course_store, queue=self.queue, clock=clock)
    self._opened = False

  @classmethod
  def from_settings(cls, settings: Settings, *, generator: TextGenerator | None = None, redis: Redis | None = None) -> PipelineRuntime:
    """Wire the production collaborators selected by configuration."""
    database: Database | None = None
    if settings.storage_backend == "postgres":
      database = Database(DatabaseSettings(debug=settings.debug, pg_dsn=settings.pg_dsn, pg_connect_timeout=settings.pg_connect_timeout))
      # Repositories resolve the session factory per call, so they can be built before open().
      job_store: JobStore = PostgresJobStore(database.new_session)
      course_store: CourseStore = PostgresCourseStore(database.new_session)
      audit: RateLimitAuditRepository = PostgresRateLimitAuditRepository(database.new_session)
    else:
      job_store = InMemoryJobStore()
      course_store = InMemoryCourseStore()
      audit = InMemoryRateLimitAuditRepository()

    if generator is None:
      generator = OpenAIChatGenerator(provider=settings.ai_provider, model_id=settings.ai_model, api_key=settings.openai_api_key, base_url=settings.ai_base_url)

    return cls(
      settings=settings,
      redis=redis or build_redis_client(settings.redis_url),
      generator=generator,
      job_store=job_store,
      course_store=course_store,
      audit=audit,
      database=database,
    )

  @property
  def is_open(self) -> bool:
    return self._opened

  async def open(self) -> None:
    if self._opened:
      return
    if self.database is not None:
      await self.database.open()
    self._opened = True
    logger.info("Pipeline runtime opened storage=%s provider=%s model=%s", self.settings.storage_backend, self.gateway.provider, self.gateway.model_id)

  async def close(self) -> None:
    """Stop workers, then release clients in reverse dependency order."""
    if not self._opened:
      return
    await self.workers.stop()
    await self.rate_limits.close()
    await self.generator.aclose()
    await self.redis.aclose()
    if self.database is not None:
      await self.database.close()
    self._opened = False
    logger.info("Pipeline runtime closed")

