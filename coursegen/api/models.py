from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from coursegen.jobs.models import JobRecord, JobState, JobType
from coursegen.ratelimit.audit_repo import RateLimitAuditRecord
from coursegen.ratelimit.store import RateLimitInfo
from coursegen.services.workflows import WorkflowStatus


class CreateCourseRequest(BaseModel):
  """Create a course shell that a workflow can later fill in."""

  title: StrictStr = Field(min_length=1, max_length=200, examples=["Introduction to Statistics"])
  description: StrictStr = Field(default="", max_length=2000)
  level: Literal["beginner", "intermediate", "advanced"] = "beginner"
  model_config = ConfigDict(extra="forbid")


class StartWorkflowRequest(BaseModel):
  regenerate: bool = False
  context: dict[str, str | int | float | bool | None] = Field(default_factory=dict, description="Optional prompt hints forwarded to the outline stage.")
  model_config = ConfigDict(extra="forbid")


class GenerateContentRequest(BaseModel):
  section_id: StrictStr | None = None
  regenerate: bool = False
  model_config = ConfigDict(extra="forbid")


class GenerateQuizzesRequest(BaseModel):
  regenerate: bool = False
  include_final_exam: bool = True
  model_config = ConfigDict(extra="forbid")


class RegenerateRequest(BaseModel):
  stage: JobType
  target_id: StrictStr | None = None
  model_config = ConfigDict(extra="forbid")


class CourseResponse(BaseModel):
  course_id: str
  title: str
  slug: str
  description: str
  level: str
  generation_status: str


class JobResponse(BaseModel):
  job_id: str
  job_type: JobType
  workflow_id: str
  state: JobState
  attempts_made: int
  max_attempts: int
  next_run_at: datetime
  created_at: datetime
  finished_at: datetime | None = None
  last_error: str | None = None
  result: dict[str, Any] | None = None
  payload: dict[str, Any] | None = None

  @classmethod
  def from_record(cls, record: JobRecord, *, include_payload: bool = False) -> JobResponse:
    return cls(
      job_id=record.job_id,
      job_type=record.job_type,
      workflow_id=record.workflow_id,
      state=record.state,
      attempts_made=record.attempts_made,
      max_attempts=record.max_attempts,
      next_run_at=record.next_run_at,
      created_at=record.created_at,
      finished_at=record.finished_at,
      last_error=record.last_error,
      result=record.result,
      payload=record.payload if include_payload else None,
    )


class JobListResponse(BaseModel):
  jobs: list[JobResponse]


class WorkflowStatusResponse(BaseModel):
  course_id: str
  status: str
  error: str | None
  started_at: datetime | None
  completed_at: datetime | None
  sections: int
  articles_total: int
  articles_generated: int
  articles_enriched: int
  final_exam_questions: int
  jobs: dict[str, int]

  @classmethod
  def from_status(cls, value: WorkflowStatus) -> WorkflowStatusResponse:
    return cls(
      course_id=value.course_id,
      status=value.status,
      error=value.error,
      started_at=value.started_at,
      completed_at=value.completed_at,
      sections=value.sections,
      articles_total=value.articles_total,
      articles_generated=value.articles_generated,
      articles_enriched=value.articles_enriched,
      final_exam_questions=value.final_exam_questions,
      jobs=value.jobs,
    )


class RateLimitResponse(BaseModel):
  provider: str | None
  model_id: str | None
  is_rate_limited: bool
  timeout_until: datetime | None
  seconds_remaining: int | None

  @classmethod
  def from_info(cls, info: RateLimitInfo) -> RateLimitResponse:
    return cls(provider=info.provider, model_id=info.model_id, is_rate_limited=info.is_rate_limited, timeout_until=info.timeout_until, seconds_remaining=info.seconds_remaining)


class RateLimitHistoryEntry(BaseModel):
  provider: str
  model_id: str
  timeout_until: datetime
  hit_count: int
  is_active: bool
  last_hit_at: datetime
  cleared_at: datetime | None

  @classmethod
  def from_record(cls, record: RateLimitAuditRecord) -> RateLimitHistoryEntry:
    return cls(
      provider=record.provider,
      model_id=record.model_id,
      timeout_until=record.timeout_until,
      hit_count=record.hit_count,
      is_active=record.is_active,
      last_hit_at=record.last_hit_at,
      cleared_at=record.cleared_at,
    )
