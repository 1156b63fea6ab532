"""OpenAI-compatible chat generator (OpenAI, OpenRouter, Azure-style gateways)."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Final

from openai import APIConnectionError, APITimeoutError, AsyncOpenAI

from coursegen.ai.errors import GenerationError, GenerationTimeoutError, TransientInfrastructureError
from coursegen.ai.providers.base import TextGenerator

logger = logging.getLogger(__name__)

# Sampling profile per interaction type: (temperature, max_tokens).
_INTERACTION_PROFILES: Final[dict[str, tuple[float, int]]] = {
  "course_outline_generation": (0.7, 4000),
  "course_article_generation": (0.7, 6000),
  "article_enrichment": (0.4, 1500),
  "quiz_generation": (0.5, 4000),
  "final_exam_bank_generation": (0.5, 8000),
}
_DEFAULT_PROFILE: Final[tuple[float, int]] = (0.7, 4000)

_SYSTEM_PROMPT: Final[str] = "You are an expert instructional designer who writes accurate, well-structured course material. Follow the requested output format exactly."


class OpenAIChatGenerator(TextGenerator):
  """Chat-completions generator; upstream errors propagate for classification."""

  def __init__(self, *, provider: str, model_id: str, api_key: str | None, base_url: str | None = None, client: AsyncOpenAI | None = None) -> None:
    self.provider = provider
    self.model_id = model_id
    self._api_key = api_key
    self._base_url = base_url
    self._client = client

  def _get_client(self) -> AsyncOpenAI:
    """Build the SDK client on first use so operator tooling runs without credentials."""
    if self._client is None:
      if not self._api_key:
        raise GenerationError("OPENAI_API_KEY must be set to use the OpenAI-compatible generator.")
      # SDK retries are disabled; the job queue owns retry timing.
      self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url, max_retries=0)
    return self._client

  async def generate(self, interaction_type: str, prompt: str, context: Mapping[str, Any]) -> str:
    temperature, max_tokens = _INTERACTION_PROFILES.get(interaction_type, _DEFAULT_PROFILE)
    try:
      response = await self._get_client().chat.completions.create(
        model=self.model_id,
        messages=[{"role": "system", "content": _SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
        temperature=temperature,
        max_tokens=max_tokens,
      )
    except APITimeoutError as exc:
      raise GenerationTimeoutError(f"{self.provider}:{self.model_id} timed out during {interaction_type}") from exc
    except APIConnectionError as exc:
      raise TransientInfrastructureError(f"Could not reach {self.provider}: {exc}") from exc

    content = response.choices[0].message.content or ""
    if response.usage:
      logger.info("Generated %s with %s:%s tokens=%s course=%s", interaction_type, self.provider, self.model_id, response.usage.total_tokens, context.get("course_id"))
    return content

  async def aclose(self) -> None:
    if self._client is not None:
      await self._client.close()
