"""Per-(provider, model) rate-limit suppression backed by Redis with a durable audit trail.

Redis is the source of truth for the allow/deny decision because keys expire on their own;
the audit repository only mirrors events for operators and is never read by `check`.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from redis.asyncio import Redis
from redis.exceptions import RedisError

from coursegen.ratelimit.audit_repo import RateLimitAuditRecord, RateLimitAuditRepository
from coursegen.utils.clock import Clock, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "ai_rate_limit:"
DEFAULT_TIMEOUT_SECONDS = 60
_WAIT_POLL_CAP_SECONDS = 5.0


@dataclass(frozen=True)
class RateLimitInfo:
  """Current suppression state for one (provider, model) pair."""

  is_rate_limited: bool
  provider: str | None = None
  model_id: str | None = None
  timeout_until: datetime | None = None
  seconds_remaining: int | None = None


_NOT_LIMITED = RateLimitInfo(is_rate_limited=False)


class RateLimitStore:
  """Track which (provider, model) pairs are currently suppressed."""

  def __init__(self, *, redis: Redis, audit: RateLimitAuditRepository, key_prefix: str = DEFAULT_KEY_PREFIX, default_timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS, clock: Clock = utc_now) -> None:
    self._redis = redis
    self._audit = audit
    self._prefix = key_prefix
    self._default_timeout = default_timeout_seconds
    self._clock = clock
    self._pending: set[asyncio.Task[None]] = set()

  @property
  def default_timeout_seconds(self) -> int:
    return self._default_timeout

  def key_for(self, provider: str, model_id: str) -> str:
    return f"{self._prefix}{provider}:{model_id}"

  def _split_key(self, key: str) -> tuple[str, str] | None:
    if not key.startswith(self._prefix):
      return None
    provider, sep, model_id = key[len(self._prefix) :].partition(":")
    if not sep or not provider or not model_id:
      return None
    return provider, model_id

  async def check(self, provider: str, model_id: str) -> RateLimitInfo:
    """Report whether calls are suppressed; fails open when Redis is unreachable."""
    key = self.key_for(provider, model_id)
    try:
      raw = await self._redis.get(key)
    except (RedisError, OSError) as exc:
      logger.warning("Rate-limit check failed open for %s:%s: %s", provider, model_id, exc)
      return _NOT_LIMITED

    if raw is None:
      return _NOT_LIMITED

    now = self._clock()
    try:
      deadline = parse_iso(raw)
    except ValueError:
      logger.warning("Discarding unparseable rate-limit deadline for %s:%s: %r", provider, model_id, raw)
      deadline = now

    if now >= deadline:
      # The key outlived its deadline; prune it and reconcile the audit row in the background.
      await self._delete_quietly(key)
      self._schedule_reconcile(provider, model_id, cleared_at=now)
      return _NOT_LIMITED

    seconds_remaining = math.ceil((deadline - now).total_seconds())
    return RateLimitInfo(is_rate_limited=True, provider=provider, model_id=model_id, timeout_until=deadline, seconds_remaining=seconds_remaining)

  async def set(self, provider: str, model_id: str, retry_after_seconds: int | None = None) -> RateLimitInfo | None:
    """Suppress the pair for the provider hint when present, else the default timeout."""
    timeout_seconds = retry_after_seconds if retry_after_seconds is not None and retry_after_seconds > 0 else self._default_timeout
    now = self._clock()
    deadline = now + timedelta(seconds=timeout_seconds)
    key = self.key_for(provider, model_id)

    try:
      await self._redis.set(key, to_iso(deadline), ex=int(timeout_seconds))
    except (RedisError, OSError) as exc:
      logger.error("Failed to store rate limit for %s:%s: %s", provider, model_id, exc)
      return None

    logger.warning("Rate limit set for %s:%s until %s (%ss)", provider, model_id, to_iso(deadline), timeout_seconds)

    try:
      await self._audit.record_hit(provider=provider, model_id=model_id, timeout_until=deadline, hit_at=now)
    except Exception as exc:  # noqa: BLE001
      logger.error("Failed to record rate-limit audit for %s:%s: %s", provider, model_id, exc)

    return RateLimitInfo(is_rate_limited=True, provider=provider, model_id=model_id, timeout_until=deadline, seconds_remaining=int(timeout_seconds))

  async def clear(self, provider: str, model_id: str) -> None:
    """Lift suppression; the Redis key would expire on its own if this fails."""
    await self._delete_quietly(self.key_for(provider, model_id))
    try:
      await self._audit.mark_inactive(provider=provider, model_id=model_id, cleared_at=self._clock())
    except Exception as exc:  # noqa: BLE001
      logger.error("Failed to clear rate-limit audit for %s:%s: %s", provider, model_id, exc)
      return

    logger.info("Rate limit cleared for %s:%s", provider, model_id)

  async def clear_all(self) -> int:
    """Clear every pair under the namespace; returns how many keys were removed."""
    removed = 0
    try:
      keys = [key async for key in self._redis.scan_iter(match=f"{self._prefix}*")]
      if keys:
        removed = int(await self._redis.delete(*keys))
    except (RedisError, OSError) as exc:
      logger.error("Failed to clear rate-limit keys: %s", exc)

    try:
      await self._audit.mark_all_inactive(cleared_at=self._clock())
    except Exception as exc:  # noqa: BLE001
      logger.error("Failed to clear rate-limit audit rows: %s", exc)

    logger.info("Cleared %d rate-limit keys", removed)
    return removed

  async def list_active(self) -> list[RateLimitInfo]:
    """Resolve every namespaced key through `check`, pruning expired ones."""
    try:
      keys = [key async for key in self._redis.scan_iter(match=f"{self._prefix}*")]
    except (RedisError, OSError) as exc:
      logger.warning("Unable to list rate limits: %s", exc)
      return []

    active: list[RateLimitInfo] = []
    for key in sorted(keys):
      pair = self._split_key(key)
      if pair is None:
        continue
      info = await self.check(*pair)
      if info.is_rate_limited:
        active.append(info)
    # Keys Redis already evicted never reach `check`; sweep their audit rows by deadline.
    await self.reconcile_expired()
    return active

  async def reconcile_expired(self) -> int:
    """Deactivate audit rows whose deadline passed without `check` seeing the key."""
    try:
      changed = await self._audit.mark_expired(now=self._clock())
    except Exception as exc:  # noqa: BLE001
      logger.warning("Rate-limit audit sweep failed: %s", exc)
      return 0

    if changed:
      logger.info("Deactivated %d expired rate-limit audit record(s)", changed)
    return changed

  async def history(self, limit: int = 50) -> list[RateLimitAuditRecord]:
    return await self._audit.list_recent(limit=limit)

  async def wait_until_clear(self, provider: str, model_id: str, *, max_wait_seconds: float = 120.0) -> bool:
    """Sleep until the pair is allowed again; False when the wait budget runs out first."""
    waited = 0.0
    while True:
      info = await self.check(provider, model_id)
      if not info.is_rate_limited:
        return True

      remaining_budget = max_wait_seconds - waited
      if remaining_budget <= 0:
        return False

      # Poll in short slices so an operator clear is noticed quickly.
      pause = min(float(info.seconds_remaining or 1), _WAIT_POLL_CAP_SECONDS, remaining_budget)
      logger.info("Waiting %.1fs for rate limit on %s:%s", pause, provider, model_id)
      await asyncio.sleep(pause)
      waited += pause

  async def wait_for_reconciliation(self) -> None:
    """Await audit reconciliations started by `check`."""
    while self._pending:
      await asyncio.gather(*list(self._pending), return_exceptions=True)

  async def close(self) -> None:
    await self.wait_for_reconciliation()

  async def _delete_quietly(self, key: str) -> None:
    try:
      await self._redis.delete(key)
    except (RedisError, OSError) as exc:
      logger.warning("Failed to delete rate-limit key %s: %s", key, exc)

  def _schedule_reconcile(self, provider: str, model_id: str, *, cleared_at: datetime) -> None:
    task = asyncio.create_task(self._reconcile(provider, model_id, cleared_at))
    self._pending.add(task)
    task.add_done_callback(self._pending.discard)

  async def _reconcile(self, provider: str, model_id: str, cleared_at: datetime) -> None:
    try:
      changed = await self._audit.mark_inactive(provider=provider, model_id=model_id, cleared_at=cleared_at)
    except Exception as exc:  # noqa: BLE001
      logger.warning("Rate-limit audit reconciliation failed for %s:%s: %s", provider, model_id, exc)
      return

    if changed:
      logger.info("Rate limit expired for %s:%s; audit record deactivated", provider, model_id)
