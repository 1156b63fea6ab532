"""Operator endpoints for the job queue and the rate-limit store."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from coursegen.api.deps import get_runtime, require_admin
from coursegen.api.models import JobListResponse, JobResponse, RateLimitHistoryEntry, RateLimitResponse
from coursegen.core.runtime import PipelineRuntime
from coursegen.jobs.models import JobState

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)

Runtime = Annotated[PipelineRuntime, Depends(get_runtime)]


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(runtime: Runtime, state: JobState | None = None, workflow_id: str | None = None, limit: Annotated[int, Query(ge=1, le=500)] = 50, offset: Annotated[int, Query(ge=0)] = 0) -> JobListResponse:
  jobs = await runtime.queue.list_jobs(states=[state] if state else None, workflow_id=workflow_id, limit=limit, offset=offset)
  return JobListResponse(jobs=[JobResponse.from_record(job) for job in jobs])


@router.get("/jobs/counts")
async def job_counts(runtime: Runtime, workflow_id: str | None = None) -> dict[str, int]:
  return await runtime.queue.counts(workflow_id)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, runtime: Runtime) -> JobResponse:
  job = await runtime.queue.get(job_id)
  if job is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found.")
  return JobResponse.from_record(job, include_payload=True)


@router.post("/jobs/{job_id}/retry", response_model=JobResponse)
async def retry_job(job_id: str, runtime: Runtime) -> JobResponse:
  try:
    job = await runtime.workflows.retry_job(job_id)
  except LookupError as exc:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
  except ValueError as exc:
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
  return JobResponse.from_record(job)


@router.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_job(job_id: str, runtime: Runtime) -> None:
  if not await runtime.queue.remove(job_id):
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found.")


@router.delete("/jobs")
async def clear_jobs(runtime: Runtime, state: JobState | None = None) -> dict[str, int]:
  return {"removed": await runtime.queue.clear(state)}


@router.get("/rate-limits", response_model=list[RateLimitResponse])
async def list_rate_limits(runtime: Runtime) -> list[RateLimitResponse]:
  return [RateLimitResponse.from_info(info) for info in await runtime.rate_limits.list_active()]


@router.get("/rate-limits/history", response_model=list[RateLimitHistoryEntry])
async def rate_limit_history(runtime: Runtime, limit: Annotated[int, Query(ge=1, le=500)] = 50) -> list[RateLimitHistoryEntry]:
  return [RateLimitHistoryEntry.from_record(record) for record in await runtime.rate_limits.history(limit)]


@router.delete("/rate-limits/{provider}/{model_id:path}", status_code=status.HTTP_204_NO_CONTENT)
async def clear_rate_limit(provider: str, model_id: str, runtime: Runtime) -> None:
  await runtime.rate_limits.clear(provider, model_id)


@router.delete("/rate-limits")
async def clear_all_rate_limits(runtime: Runtime) -> dict[str, int]:
  return {"removed": await runtime.rate_limits.clear_all()}
