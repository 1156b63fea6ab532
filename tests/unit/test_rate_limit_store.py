from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from fakes import FakeClock
from redis.exceptions import ConnectionError as RedisConnectionError

from coursegen.ratelimit.audit_repo import InMemoryRateLimitAuditRepository
from coursegen.ratelimit.store import RateLimitStore


def _store(redis: object, clock: FakeClock, audit: object | None = None) -> RateLimitStore:
  return RateLimitStore(redis=redis, audit=audit or InMemoryRateLimitAuditRepository(), default_timeout_seconds=60, clock=clock)


@pytest.mark.anyio
async def test_set_then_check_counts_down_and_expires(redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock) -> None:
  """A window reports shrinking remaining time, then lifts and leaves the active list."""
  audit = InMemoryRateLimitAuditRepository()
  store = _store(redis_client, clock, audit)

  await store.set("openai", "gpt-test", 5)
  first = await store.check("openai", "gpt-test")
  assert first.is_rate_limited
  assert first.seconds_remaining == 5
  assert await redis_client.ttl(store.key_for("openai", "gpt-test")) > 0

  clock.advance(2)
  second = await store.check("openai", "gpt-test")
  assert second.seconds_remaining == 3

  clock.advance(3)
  assert not (await store.check("openai", "gpt-test")).is_rate_limited
  assert await store.list_active() == []
  assert await redis_client.get(store.key_for("openai", "gpt-test")) is None

  # The audit row is deactivated by the background reconciliation.
  await store.wait_for_reconciliation()
  record = audit.records[("openai", "gpt-test")]
  assert record.is_active is False
  assert record.cleared_at == clock()


@pytest.mark.anyio
@pytest.mark.parametrize("hint", [None, 0])
async def test_set_without_usable_hint_uses_default_timeout(redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock, hint: int | None) -> None:
  store = _store(redis_client, clock)
  info = await store.set("anthropic", "claude-test", hint)

  assert info is not None
  assert info.seconds_remaining == 60
  assert (await store.check("anthropic", "claude-test")).seconds_remaining == 60


@pytest.mark.anyio
async def test_list_active_only_returns_live_pairs(redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock) -> None:
  store = _store(redis_client, clock)
  await store.set("openai", "gpt-a", 10)
  await store.set("openai", "gpt-b", 100)
  await redis_client.set("unrelated:key", "value")

  clock.advance(20)
  active = await store.list_active()

  assert [(info.provider, info.model_id) for info in active] == [("openai", "gpt-b")]
  assert active[0].seconds_remaining == 80


@pytest.mark.anyio
async def test_audit_counts_hits_and_clear_deactivates(redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock) -> None:
  audit = InMemoryRateLimitAuditRepository()
  store = _store(redis_client, clock, audit)

  await store.set("openai", "gpt-test", 30)
  clock.advance(1)
  await store.set("openai", "gpt-test", 30)
  record = audit.records[("openai", "gpt-test")]
  assert record.hit_count == 2
  assert record.first_hit_at < record.last_hit_at

  await store.clear("openai", "gpt-test")
  assert not (await store.check("openai", "gpt-test")).is_rate_limited
  assert audit.records[("openai", "gpt-test")].is_active is False

  history = await store.history()
  assert [(entry.provider, entry.hit_count) for entry in history] == [("openai", 2)]


@pytest.mark.anyio
async def test_clear_all_removes_every_namespaced_key(redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock) -> None:
  audit = InMemoryRateLimitAuditRepository()
  store = _store(redis_client, clock, audit)
  await store.set("openai", "gpt-a", 30)
  await store.set("google", "gemini-test", 30)
  await redis_client.set("unrelated:key", "value")

  assert await store.clear_all() == 2
  assert await store.list_active() == []
  assert await redis_client.get("unrelated:key") == "value"
  assert not any(record.is_active for record in audit.records.values())


@pytest.mark.anyio
async def test_check_fails_open_when_redis_is_unreachable(clock: FakeClock) -> None:
  """An unreachable store must never block generation."""
  redis = MagicMock()
  redis.get = AsyncMock(side_effect=RedisConnectionError("connection refused"))
  redis.set = AsyncMock(side_effect=RedisConnectionError("connection refused"))
  redis.scan_iter = MagicMock(side_effect=RedisConnectionError("connection refused"))
  store = _store(redis, clock)

  assert not (await store.check("openai", "gpt-test")).is_rate_limited
  assert await store.set("openai", "gpt-test", 10) is None
  assert await store.list_active() == []


@pytest.mark.anyio
async def test_audit_failure_does_not_block_set(redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock) -> None:
  audit = MagicMock()
  audit.record_hit = AsyncMock(side_effect=RuntimeError("database down"))
  store = _store(redis_client, clock, audit)

  info = await store.set("openai", "gpt-test", 10)

  assert info is not None and info.is_rate_limited
  assert (await store.check("openai", "gpt-test")).is_rate_limited


@pytest.mark.anyio
async def test_unparseable_deadline_is_discarded(redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock) -> None:
  store = _store(redis_client, clock)
  await redis_client.set(store.key_for("openai", "gpt-test"), "not-a-timestamp", ex=60)

  assert not (await store.check("openai", "gpt-test")).is_rate_limited
  await store.wait_for_reconciliation()
  assert await redis_client.get(store.key_for("openai", "gpt-test")) is None


@pytest.mark.anyio
async def test_wait_until_clear_respects_budget(redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock) -> None:
  store = _store(redis_client, clock)
  assert await store.wait_until_clear("openai", "gpt-test", max_wait_seconds=0) is True

  await store.set("openai", "gpt-test", 30)
  assert await store.wait_until_clear("openai", "gpt-test", max_wait_seconds=0) is False


@pytest.mark.anyio
async def test_evicted_key_still_deactivates_audit_record(redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock) -> None:
  """Redis dropping the key on its own TTL leaves nothing for `check` to prune."""
  audit = InMemoryRateLimitAuditRepository()
  store = _store(redis_client, clock, audit)
  info = await store.set("openai", "gpt-test", 30)
  await redis_client.delete(store.key_for("openai", "gpt-test"))

  clock.advance(10)
  assert not (await store.check("openai", "gpt-test")).is_rate_limited
  assert await store.list_active() == []
  # The window is still open on paper, so the audit row stays active.
  assert audit.records[("openai", "gpt-test")].is_active is True

  clock.advance(21)
  assert await store.list_active() == []
  await store.wait_for_reconciliation()

  [record] = await store.history()
  assert record.is_active is False
  assert record.cleared_at == info.timeout_until


@pytest.mark.anyio
async def test_reconcile_expired_survives_audit_failure(redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock) -> None:
  audit = MagicMock()
  audit.mark_expired = AsyncMock(side_effect=RuntimeError("database down"))
  store = _store(redis_client, clock, audit)

  assert await store.reconcile_expired() == 0
  audit.mark_expired.assert_awaited_once_with(now=clock())
