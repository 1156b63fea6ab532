"""Guarded entry point for every generation call made by stage handlers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from coursegen.ai.errors import GenerationTimeoutError, RateLimitCondition, extract_retry_after, is_rate_limit_error
from coursegen.ai.providers.base import TextGenerator
from coursegen.ratelimit.store import RateLimitStore

logger = logging.getLogger(__name__)


class GenerationGateway:
  """Consult the rate-limit store, bound the call, and classify failures."""

  def __init__(self, *, generator: TextGenerator, rate_limits: RateLimitStore, timeout_seconds: float = 300.0) -> None:
    self._generator = generator
    self._rate_limits = rate_limits
    self._timeout_seconds = timeout_seconds

  @property
  def provider(self) -> str:
    return self._generator.provider

  @property
  def model_id(self) -> str:
    return self._generator.model_id

  async def generate(self, interaction_type: str, prompt: str, context: Mapping[str, Any] | None = None) -> str:
    """Return generated text; raises RateLimitCondition while the pair is suppressed."""
    provider, model_id = self.provider, self.model_id

    # Skip the upstream call entirely while a known window is open.
    info = await self._rate_limits.check(provider, model_id)
    if info.is_rate_limited:
      logger.info("Skipping %s: %s:%s rate limited for %ss", interaction_type, provider, model_id, info.seconds_remaining)
      raise RateLimitCondition(provider, model_id, retry_after=info.seconds_remaining)

    try:
      return await asyncio.wait_for(self._generator.generate(interaction_type, prompt, context or {}), timeout=self._timeout_seconds)
    except TimeoutError as exc:
      raise GenerationTimeoutError(f"{interaction_type} exceeded {self._timeout_seconds:.0f}s on {provider}:{model_id}") from exc
    except RateLimitCondition:
      raise
    except Exception as exc:
      if not is_rate_limit_error(exc, provider):
        raise
      retry_after = extract_retry_after(exc)
      await self._rate_limits.set(provider, model_id, retry_after)
      logger.warning("Rate limited during %s on %s:%s retry_after=%s", interaction_type, provider, model_id, retry_after)
      raise RateLimitCondition(provider, model_id, retry_after=retry_after or self._rate_limits.default_timeout_seconds, message=str(exc)) from exc
