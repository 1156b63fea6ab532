"""Dependency-injected stage dispatch helpers."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from coursegen.jobs.models import JobPayload, JobRecord


class StageHandler(Protocol):
  """Processor contract for one job type."""

  job_type: str

  async def process(self, job: JobRecord, payload: JobPayload) -> Mapping[str, Any]:
    """Run the stage for one claimed job and return a small result summary."""


class StageRegistry:
  """Registry mapping job types to stage handlers."""

  def __init__(self, handlers: Mapping[str, StageHandler]) -> None:
    self._handlers = dict(handlers)

  @classmethod
  def from_handlers(cls, *handlers: StageHandler) -> StageRegistry:
    return cls({handler.job_type: handler for handler in handlers})

  def resolve(self, job_type: str) -> StageHandler:
    """Resolve the handler for a job type."""
    handler = self._handlers.get(job_type)
    if handler is None:
      raise ValueError(f"Unsupported job type: {job_type}")
    return handler

  def job_types(self) -> tuple[str, ...]:
    return tuple(self._handlers)
