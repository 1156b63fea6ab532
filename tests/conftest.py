"""Shared fixtures wiring an in-memory pipeline runtime for tests."""

from __future__ import annotations

import random
from collections.abc import AsyncIterator, Callable
from typing import Any

import fakeredis
import pytest
from fakes import FakeClock, ScriptedGenerator, build_settings

from coursegen.core.runtime import PipelineRuntime
from coursegen.ratelimit.audit_repo import InMemoryRateLimitAuditRepository
from coursegen.storage.courses_repo import InMemoryCourseStore
from coursegen.storage.jobs_repo import InMemoryJobStore


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def generator() -> ScriptedGenerator:
  return ScriptedGenerator()


@pytest.fixture
def redis_client() -> fakeredis.FakeAsyncRedis:
  return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def make_runtime(clock: FakeClock, generator: ScriptedGenerator, redis_client: fakeredis.FakeAsyncRedis) -> Callable[..., PipelineRuntime]:
  """Build an in-memory runtime; keyword overrides are applied to the test settings."""

  def _make(**overrides: Any) -> PipelineRuntime:
    return PipelineRuntime(
      settings=build_settings(**overrides),
      redis=redis_client,
      generator=generator,
      job_store=InMemoryJobStore(),
      course_store=InMemoryCourseStore(),
      audit=InMemoryRateLimitAuditRepository(),
      clock=clock,
      rng=random.Random(7),
    )

  return _make


@pytest.fixture
async def runtime(make_runtime: Callable[..., PipelineRuntime]) -> AsyncIterator[PipelineRuntime]:
  pipeline = make_runtime()
  await pipeline.open()
  try:
    yield pipeline
  finally:
    await pipeline.close()
