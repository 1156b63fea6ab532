"""Domain models for pipeline jobs and their typed payloads."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Final, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

JobType = Literal["outline", "article_content", "enrichment", "quiz_article", "quiz_section", "quiz_final_bank", "quiz_final_exam"]
JobState = Literal["waiting", "delayed", "active", "completed", "failed"]

JOB_TYPES: Final[tuple[str, ...]] = ("outline", "article_content", "enrichment", "quiz_article", "quiz_section", "quiz_final_bank", "quiz_final_exam")
JOB_STATES: Final[tuple[str, ...]] = ("waiting", "delayed", "active", "completed", "failed")
LIVE_STATES: Final[frozenset[str]] = frozenset({"waiting", "delayed", "active"})
TERMINAL_STATES: Final[frozenset[str]] = frozenset({"completed", "failed"})

CONTEXT_MAX_KEYS: Final[int] = 24
CONTEXT_MAX_VALUE_CHARS: Final[int] = 2000

ContextScalar = str | int | float | bool | None


class InvalidJobPayloadError(ValueError):
  """Raised when a payload does not match its job type."""


class _StagePayload(BaseModel):
  """Fields every stage payload carries."""

  model_config = ConfigDict(extra="forbid", frozen=True)

  workflow_id: str = Field(min_length=1)
  regenerate: bool = False
  context: dict[str, ContextScalar] = Field(default_factory=dict)

  @field_validator("context")
  @classmethod
  def _keep_context_small(cls, value: dict[str, ContextScalar]) -> dict[str, ContextScalar]:
    """Context holds prompt hints only; content blobs stay in the entity store."""
    if len(value) > CONTEXT_MAX_KEYS:
      raise ValueError(f"context accepts at most {CONTEXT_MAX_KEYS} keys")
    for key, item in value.items():
      if isinstance(item, str) and len(item) > CONTEXT_MAX_VALUE_CHARS:
        raise ValueError(f"context value '{key}' exceeds {CONTEXT_MAX_VALUE_CHARS} characters")
    return value


class _TargetedPayload(_StagePayload):
  stage_target_id: str = Field(min_length=1)


class OutlinePayload(_StagePayload):
  job_type: Literal["outline"] = "outline"


class ArticleContentPayload(_TargetedPayload):
  """stage_target_id is the article id."""

  job_type: Literal["article_content"] = "article_content"


class EnrichmentPayload(_TargetedPayload):
  """stage_target_id is the article id."""

  job_type: Literal["enrichment"] = "enrichment"


class ArticleQuizPayload(_TargetedPayload):
  """stage_target_id is the article id."""

  job_type: Literal["quiz_article"] = "quiz_article"


class SectionQuizPayload(_TargetedPayload):
  """stage_target_id is the section id."""

  job_type: Literal["quiz_section"] = "quiz_section"


class FinalExamBankPayload(_StagePayload):
  job_type: Literal["quiz_final_bank"] = "quiz_final_bank"


class FinalExamPayload(_StagePayload):
  job_type: Literal["quiz_final_exam"] = "quiz_final_exam"


JobPayload = Annotated[
  Union[OutlinePayload, ArticleContentPayload, EnrichmentPayload, ArticleQuizPayload, SectionQuizPayload, FinalExamBankPayload, FinalExamPayload],
  Field(discriminator="job_type"),
]

_PAYLOAD_ADAPTER: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_payload(raw: Mapping[str, Any]) -> JobPayload:
  """Validate a raw payload against the variant selected by its job_type."""
  try:
    return _PAYLOAD_ADAPTER.validate_python(dict(raw))
  except ValidationError as exc:
    raise InvalidJobPayloadError(f"Invalid job payload: {exc.errors(include_url=False, include_input=False)}") from exc


def dump_payload(payload: JobPayload) -> dict[str, Any]:
  return payload.model_dump(mode="json")


@dataclass
class JobRecord:
  """A queued unit of pipeline work."""

  job_id: str
  job_type: JobType
  workflow_id: str
  payload: dict[str, Any]
  state: JobState
  attempts_made: int
  max_attempts: int
  next_run_at: datetime
  created_at: datetime
  updated_at: datetime
  seq: int = 0
  started_at: datetime | None = None
  finished_at: datetime | None = None
  locked_until: datetime | None = None
  last_error: str | None = None
  result: dict[str, Any] | None = None
  idempotency_key: str | None = None

  @property
  def is_terminal(self) -> bool:
    return self.state in TERMINAL_STATES

  def typed_payload(self) -> JobPayload:
    return parse_payload(self.payload)
