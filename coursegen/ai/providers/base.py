"""Generator contract consumed by the generation gateway."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol


class TextGenerator(Protocol):
  """A fallible text producer bound to one (provider, model) pair."""

  provider: str
  model_id: str

  async def generate(self, interaction_type: str, prompt: str, context: Mapping[str, Any]) -> str:
    """Return generated text or raise the upstream error unchanged."""

  async def aclose(self) -> None:
    """Release network resources."""
