"""Rate-limit-aware retry delays for failed jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from coursegen.ai.errors import RateLimitCondition
from coursegen.ratelimit.store import RateLimitStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
  """Delay bounds in milliseconds."""

  base_delay_ms: int = 10_000
  max_delay_ms: int = 300_000
  rate_limit_floor_ms: int = 5_000


class BackoffScheduler:
  """Compute the delay before a job's next attempt; reads rate-limit state, never writes it."""

  def __init__(self, *, rate_limits: RateLimitStore, policy: BackoffPolicy | None = None) -> None:
    self._rate_limits = rate_limits
    self._policy = policy or BackoffPolicy()

  @property
  def policy(self) -> BackoffPolicy:
    return self._policy

  def exponential_delay_ms(self, attempts_made: int) -> int:
    """Base delay doubling per attempt, capped."""
    exponent = max(attempts_made, 1) - 1
    # Cap the exponent so huge attempt counts never build giant ints.
    if exponent > 32:
      return self._policy.max_delay_ms
    return min(self._policy.base_delay_ms * (2**exponent), self._policy.max_delay_ms)

  async def compute_delay_ms(self, attempts_made: int, job_type: str, error: BaseException | None) -> int:
    """Return the delay for the next attempt of a job that just failed with `error`."""
    if not isinstance(error, RateLimitCondition):
      delay_ms = self.exponential_delay_ms(attempts_made)
      logger.debug("Exponential backoff job_type=%s attempts=%d delay_ms=%d", job_type, attempts_made, delay_ms)
      return delay_ms

    info = await self._rate_limits.check(error.provider, error.model_id)
    if info.is_rate_limited and info.seconds_remaining is not None:
      window_seconds = info.seconds_remaining
    else:
      # The store failed open or the window already closed; fall back to the carried hint.
      window_seconds = error.retry_after or 0

    delay_ms = max(window_seconds * 1000, self._policy.rate_limit_floor_ms)
    logger.info("Rate-limit backoff job_type=%s provider=%s model=%s attempts=%d delay_ms=%d", job_type, error.provider, error.model_id, attempts_made, delay_ms)
    return delay_ms
