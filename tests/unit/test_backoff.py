from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from fakes import FakeClock

from coursegen.ai.backoff import BackoffPolicy, BackoffScheduler
from coursegen.ai.errors import RateLimitCondition
from coursegen.ratelimit.audit_repo import InMemoryRateLimitAuditRepository
from coursegen.ratelimit.store import RateLimitInfo, RateLimitStore


@pytest.fixture
def rate_limits(redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock) -> RateLimitStore:
  return RateLimitStore(redis=redis_client, audit=InMemoryRateLimitAuditRepository(), clock=clock)


@pytest.mark.anyio
async def test_delay_covers_known_rate_limit_window(rate_limits: RateLimitStore) -> None:
  """A 40s window must not be retried after a short exponential delay."""
  scheduler = BackoffScheduler(rate_limits=rate_limits)
  await rate_limits.set("openai", "gpt-test", 40)

  delay_ms = await scheduler.compute_delay_ms(1, "article_content", RateLimitCondition("openai", "gpt-test", retry_after=3))

  assert delay_ms >= 40_000


@pytest.mark.anyio
async def test_delay_falls_back_to_carried_hint_without_live_window(rate_limits: RateLimitStore) -> None:
  scheduler = BackoffScheduler(rate_limits=rate_limits)

  delay_ms = await scheduler.compute_delay_ms(2, "outline", RateLimitCondition("openai", "gpt-test", retry_after=12))

  assert delay_ms == 12_000


@pytest.mark.anyio
async def test_short_windows_are_raised_to_the_floor(rate_limits: RateLimitStore) -> None:
  scheduler = BackoffScheduler(rate_limits=rate_limits)
  await rate_limits.set("openai", "gpt-test", 2)

  assert await scheduler.compute_delay_ms(1, "enrichment", RateLimitCondition("openai", "gpt-test")) == 5_000
  assert await scheduler.compute_delay_ms(1, "enrichment", RateLimitCondition("google", "gemini-test")) == 5_000


@pytest.mark.anyio
@pytest.mark.parametrize(("attempts", "expected"), [(1, 10_000), (2, 20_000), (3, 40_000), (5, 160_000), (6, 300_000), (80, 300_000)])
async def test_other_errors_back_off_exponentially_with_cap(rate_limits: RateLimitStore, attempts: int, expected: int) -> None:
  scheduler = BackoffScheduler(rate_limits=rate_limits)
  assert await scheduler.compute_delay_ms(attempts, "quiz_article", ConnectionError("reset")) == expected


@pytest.mark.anyio
async def test_scheduler_only_reads_rate_limit_state() -> None:
  store = MagicMock()
  store.check = AsyncMock(return_value=RateLimitInfo(is_rate_limited=True, provider="openai", model_id="gpt-test", seconds_remaining=30))
  store.set = AsyncMock()
  scheduler = BackoffScheduler(rate_limits=store, policy=BackoffPolicy(rate_limit_floor_ms=1_000))

  assert await scheduler.compute_delay_ms(1, "outline", RateLimitCondition("openai", "gpt-test")) == 30_000
  store.set.assert_not_called()
